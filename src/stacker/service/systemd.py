"""
systemd units for installed technologies.

A technology may have a user unit ($XDG_CONFIG_HOME/systemd/user) or a
system unit (/etc/systemd/system, written through the Privilege Broker).
Control actions prefer the user unit when both exist.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Literal

import structlog

from ..core import process
from ..core.paths import XdgPaths
from ..core.privilege import PrivilegeBroker, PrivilegedFS, effective_home, effective_user
from ..errors import ServiceError

if TYPE_CHECKING:
    from ..install.target import InstallationTarget

logger = structlog.get_logger()

Scope = Literal["user", "system"]

SYSTEM_UNIT_DIR = Path("/etc/systemd/system")
ACTIONS = ("start", "stop", "restart", "status", "enable", "disable")


class ServiceManager:
    """Creates and controls a technology's systemd unit.

    Args:
        broker: Privilege broker for the system unit directory.
        xdg: XDG roots (user unit directory and unit environment).
        system_unit_dir: Where system units are written.
    """

    def __init__(
        self,
        broker: PrivilegeBroker,
        xdg: XdgPaths | None = None,
        system_unit_dir: Path = SYSTEM_UNIT_DIR,
    ) -> None:
        self.broker = broker
        self.fs = PrivilegedFS(broker)
        self.xdg = xdg or XdgPaths.from_env()
        self.system_unit_dir = Path(system_unit_dir)
        self.log = logger.bind(component="service_manager")

    @staticmethod
    def unit_name(target: "InstallationTarget") -> str:
        return f"{target.tech_name}.service"

    def user_unit_path(self, target: "InstallationTarget") -> Path:
        return self.xdg.config_home / "systemd" / "user" / self.unit_name(target)

    def system_unit_path(self, target: "InstallationTarget") -> Path:
        return self.system_unit_dir / self.unit_name(target)

    def registered_scope(self, target: "InstallationTarget") -> Scope | None:
        """Which unit exists for the technology, user first."""
        if self.user_unit_path(target).is_file():
            return "user"
        if self.system_unit_path(target).is_file():
            return "system"
        return None

    def render_unit(self, target: "InstallationTarget", scope: Scope) -> str:
        home = effective_home()
        description = target.service_description or f"{target.tech_name} service"
        env_lines = [f'Environment="HOME={home}"']
        env_lines += [f'Environment="{k}={v}"' for k, v in self.xdg.as_env().items()]
        env_lines.append(f'Environment="PATH={home}/.local/bin:/usr/local/bin:/usr/bin:/bin"')

        unit = [
            "[Unit]",
            f"Description={description}" + (" (User Service)" if scope == "user" else ""),
            "After=network.target",
            "StartLimitIntervalSec=0",
            "",
            "[Service]",
            "Type=simple",
        ]
        if scope == "system":
            unit.append(f"User={effective_user()}")
        unit += env_lines
        unit += [
            f"WorkingDirectory={target.data_dir}",
            f"ExecStart={target.artifact}",
            "Restart=always",
            "RestartSec=30",
            "StandardOutput=journal",
            "StandardError=journal",
            "",
            "[Install]",
            f"WantedBy={'default.target' if scope == 'user' else 'multi-user.target'}",
            "",
        ]
        return "\n".join(unit)

    def _systemctl(self, scope: Scope, *args: str, check: bool = True):
        if scope == "user":
            return process.run(["systemctl", "--user", *args], check=check)
        if not check:
            return process.run(["systemctl", *args], check=False)
        return self.broker.exec_privileged(self.system_unit_dir, ["systemctl", *args])

    def setup(self, target: "InstallationTarget", scope: Scope = "user") -> Path:
        """Write the unit, reload systemd and enable it.

        Raises:
            MissingToolError: systemctl is not available.
            ExecError / InsufficientPrivilegeError: systemd refused.
        """
        process.require_commands("systemctl")
        content = self.render_unit(target, scope)
        if scope == "user":
            path = self.user_unit_path(target)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        else:
            path = self.system_unit_path(target)
            self.fs.write_text(path, content)

        self._systemctl(scope, "daemon-reload")
        self._systemctl(scope, "enable", self.unit_name(target))
        self.log.info("service.created", unit=self.unit_name(target), scope=scope, path=str(path))
        return path

    def control(self, target: "InstallationTarget", action: str) -> str:
        """Run a systemctl action on the registered unit.

        Returns:
            systemctl's stdout (used by status).

        Raises:
            ServiceError: Unknown action or no unit registered.
        """
        if action not in ACTIONS:
            raise ServiceError(f"Unknown service action: {action}", operation="service")
        scope = self.registered_scope(target)
        if scope is None:
            raise ServiceError(
                f"No systemd service found for {target.tech_name}",
                operation=f"service {action}",
            )
        process.require_commands("systemctl")
        unit = self.unit_name(target)
        if action == "status":
            # status exits non-zero for inactive units
            proc = self._systemctl(scope, "status", unit, "--no-pager", "-l", check=False)
            return proc.stdout
        proc = self._systemctl(scope, action, unit)
        self.log.info("service.action", unit=unit, scope=scope, action=action)
        return proc.stdout

    def restart_if_registered(self, target: "InstallationTarget") -> str | None:
        """Restart the unit if one exists. Returns the unit name, or None."""
        if self.registered_scope(target) is None:
            return None
        self.control(target, "restart")
        return self.unit_name(target)

    def teardown(self, target: "InstallationTarget") -> None:
        """Stop, disable and delete the unit, if any."""
        scope = self.registered_scope(target)
        if scope is None:
            return
        unit = self.unit_name(target)
        if process.which("systemctl"):
            self._systemctl(scope, "disable", "--now", unit)
        if scope == "user":
            self.user_unit_path(target).unlink(missing_ok=True)
        else:
            self.fs.remove(self.system_unit_path(target))
        if process.which("systemctl"):
            self._systemctl(scope, "daemon-reload")
        self.log.info("service.removed", unit=unit, scope=scope)
