"""Apache web server capability: site files, modules and service control."""

import os
import re
from typing import Optional

from jinja2 import Environment, PackageLoader, StrictUndefined

from fireflyinstaller.constants import (
    APACHE_MODS_ENABLED,
    APACHE_PORTS_CONF,
    APACHE_SITES_AVAILABLE,
    APACHE_SITES_ENABLED,
    LETSENCRYPT_LIVE_DIR,
)
from fireflyinstaller.errors import InstallerError

TEMPLATES = Environment(
    loader=PackageLoader("fireflyinstaller", "templates"),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)


def render_site_config(
    document_root: str,
    log_prefix: str,
    server_name: Optional[str] = None,
    port: int = 80,
    tls: bool = False,
    cert_dir: Optional[str] = None,
) -> str:
    """Render an Apache virtual host for a Laravel ``public`` directory."""
    if tls and not server_name:
        raise InstallerError("A server name is required to render a TLS virtual host.")
    if tls and not cert_dir:
        cert_dir = os.path.join(LETSENCRYPT_LIVE_DIR, server_name)

    return TEMPLATES.get_template("apache/site.conf.j2").render(
        public_dir=os.path.join(document_root, "public"),
        log_prefix=log_prefix,
        server_name=server_name,
        port=port,
        tls=tls,
        cert_dir=cert_dir,
    )


class ApacheService:
    """Manages Apache site files the way ``a2ensite`` does, plus service control."""

    def __init__(
        self,
        run_cmd,
        logger,
        sites_available: str = APACHE_SITES_AVAILABLE,
        sites_enabled: str = APACHE_SITES_ENABLED,
        mods_enabled: str = APACHE_MODS_ENABLED,
        ports_conf: str = APACHE_PORTS_CONF,
        service_name: str = "apache2",
    ):
        self.run_cmd = run_cmd
        self.logger = logger
        self.sites_available = sites_available
        self.sites_enabled = sites_enabled
        self.mods_enabled = mods_enabled
        self.ports_conf = ports_conf
        self.service_name = service_name

    def site_path(self, site: str) -> str:
        return os.path.join(self.sites_available, f"{site}.conf")

    def enabled_path(self, site: str) -> str:
        return os.path.join(self.sites_enabled, f"{site}.conf")

    def read_site(self, site: str) -> Optional[str]:
        path = self.site_path(site)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as file_obj:
            return file_obj.read()

    def write_site(self, site: str, content: str):
        os.makedirs(self.sites_available, exist_ok=True)
        with open(self.site_path(site), "w", encoding="utf-8") as file_obj:
            file_obj.write(content)
        os.chmod(self.site_path(site), 0o644)

    def remove_site(self, site: str):
        self.disable_site(site)
        if os.path.exists(self.site_path(site)):
            os.remove(self.site_path(site))

    def is_site_enabled(self, site: str) -> bool:
        target = self.enabled_path(site)
        if not os.path.islink(target):
            return False
        return os.path.realpath(target) == os.path.realpath(self.site_path(site))

    def enable_site(self, site: str):
        source = self.site_path(site)
        target = self.enabled_path(site)
        os.makedirs(self.sites_enabled, exist_ok=True)
        if os.path.lexists(target):
            if self.is_site_enabled(site):
                return
            os.remove(target)
        os.symlink(source, target)
        self.logger.debug("Enabled site %s", site)

    def disable_site(self, site: str) -> bool:
        target = self.enabled_path(site)
        if not os.path.lexists(target):
            return False
        os.remove(target)
        self.logger.debug("Disabled site %s", site)
        return True

    def is_module_enabled(self, module: str) -> bool:
        return os.path.exists(os.path.join(self.mods_enabled, f"{module}.load"))

    def enable_module(self, module: str) -> bool:
        if self.is_module_enabled(module):
            return False
        self.run_cmd(["a2enmod", "-q", module])
        return True

    def disable_module(self, module: str) -> bool:
        if not self.is_module_enabled(module):
            return False
        self.run_cmd(["a2dismod", "-q", module], check=False)
        return True

    def enabled_php_modules(self):
        if not os.path.isdir(self.mods_enabled):
            return []
        return sorted(
            name[: -len(".load")]
            for name in os.listdir(self.mods_enabled)
            if re.match(r"^php\d+\.\d+\.load$", name)
        )

    def test_config(self):
        result = self.run_cmd(["apachectl", "configtest"], check=False, capture_output=True)
        if result.returncode != 0:
            output = ((result.stderr or "") + (result.stdout or "")).strip()
            raise InstallerError(f"apachectl configtest failed: {output or 'no output'}")
        return result

    def reload(self):
        self.run_cmd(["systemctl", "reload", self.service_name])

    def restart(self):
        self.run_cmd(["systemctl", "restart", self.service_name])

    def stop(self):
        self.run_cmd(["systemctl", "stop", self.service_name], check=False)

    def start(self):
        self.run_cmd(["systemctl", "start", self.service_name], check=False)

    def is_active(self) -> bool:
        for service in (self.service_name, "nginx"):
            result = self.run_cmd(["systemctl", "is-active", "--quiet", service], check=False)
            if result.returncode == 0:
                return True
        return False

    def has_listen_port(self, port: int) -> bool:
        if not os.path.exists(self.ports_conf):
            return False
        pattern = re.compile(rf"^\s*Listen\s+(?:[\d.:\[\]]+:)?{port}\b", re.MULTILINE)
        with open(self.ports_conf, "r", encoding="utf-8") as file_obj:
            return bool(pattern.search(file_obj.read()))

    def add_listen_port(self, port: int):
        os.makedirs(os.path.dirname(self.ports_conf) or ".", exist_ok=True)
        with open(self.ports_conf, "a", encoding="utf-8") as file_obj:
            file_obj.write(f"Listen {port}\n")
