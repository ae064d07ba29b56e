"""Filesystem locations, modes and defaults shared across the installer."""

DIR_MODE = 0o755
FILE_MODE = 0o644
STORAGE_MODE = 0o775
ENV_FILE_MODE = 0o640
SECRET_FILE_MODE = 0o600

WEB_USER = "www-data"
WEB_GROUP = "www-data"

FIREFLY_REPO = "firefly-iii/firefly-iii"
IMPORTER_REPO = "firefly-iii/data-importer"

DEFAULT_FIREFLY_INSTALL_DIR = "/var/www/firefly-iii"
DEFAULT_IMPORTER_INSTALL_DIR = "/var/www/data-importer"
FIREFLY_TEMP_DIR = "/tmp/firefly-iii-temp"
IMPORTER_TEMP_DIR = "/tmp/data-importer-temp"

DEFAULT_CONFIG_FILE = "/etc/fireflyinstaller.yml"
DEFAULT_LOG_DIR = "/var/log"
LOG_FILE_PREFIX = "firefly_install"
MAX_LOG_FILES = 5
MAX_LOG_AGE_DAYS = 7

DEFAULT_CREDENTIALS_FILE = "/root/firefly_credentials.txt"
DEFAULT_LOCK_FILE = "/run/fireflyinstaller.lock"
DEFAULT_BACKUP_RETENTION = 3

CRON_FILE = "/etc/cron.d/firefly-iii-cron"
CRON_PATH_LINE = "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
DEFAULT_CRON_HOUR = 3

APACHE_SITES_AVAILABLE = "/etc/apache2/sites-available"
APACHE_SITES_ENABLED = "/etc/apache2/sites-enabled"
APACHE_MODS_ENABLED = "/etc/apache2/mods-enabled"
APACHE_PORTS_CONF = "/etc/apache2/ports.conf"
FIREFLY_SITE_NAME = "firefly-iii"
IMPORTER_SITE_NAME = "firefly-importer"
IMPORTER_PORT = 8080

PHP_CONF_DIR = "/etc/php"

LETSENCRYPT_LIVE_DIR = "/etc/letsencrypt/live"
CERT_RENEWAL_SECONDS = 30 * 24 * 3600

APP_KEY_PLACEHOLDER = "SomeRandomStringOf32CharsExactly"
MODE_COUNTDOWN_SECONDS = 30
MAX_RELEASES_TO_CHECK = 10
DOWNLOAD_RETRIES = 3
DOWNLOAD_TIMEOUT = 30
MIGRATION_RETRIES = 3
