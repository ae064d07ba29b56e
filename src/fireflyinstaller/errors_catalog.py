"""Actionable error catalog for FireflyInstaller."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "missing_required_variable": {
        "what": "{variable} is required when {condition}.",
        "next": "Export {variable} before running in non-interactive mode.",
    },
    "invalid_variable": {
        "what": "{variable} has an invalid value: {value}",
        "next": "{hint}",
    },
    "not_root": {
        "what": "The installer must run as root.",
        "next": "Re-run the command with `sudo`.",
    },
    "lock_held": {
        "what": "Another installer run is in progress (lock file {path}, pid {pid}).",
        "next": "Wait for it to finish or remove {path} if that process no longer exists.",
    },
    "package_install_failed": {
        "what": "Failed to install system packages: {packages}.",
        "next": "Run `apt-get install -y {packages}` manually and review the apt output.",
    },
    "no_compatible_runtime": {
        "what": "No available PHP version satisfies the requirement >= {required}.",
        "next": "Add a PHP repository that ships PHP {required} or set PHP_VERSION explicitly.",
    },
    "runtime_missing": {
        "what": "PHP is not installed or its version could not be detected.",
        "next": "Install PHP with `apt-get install -y php` or run a fresh installation.",
    },
    "no_compatible_release": {
        "what": "No {app} release compatible with PHP {runtime} was found.",
        "next": "Upgrade PHP (set PHP_VERSION) and run the installer again.",
    },
    "release_not_found": {
        "what": "No release asset matching `{pattern}` was found for {repo} ({tag}).",
        "next": "Check https://github.com/{repo}/releases or pin another release tag.",
    },
    "github_rate_limited": {
        "what": "GitHub API rate limit exceeded while querying {repo}.",
        "next": "Set GITHUB_TOKEN to a personal access token or wait for the limit to reset.",
    },
    "github_bad_credentials": {
        "what": "GitHub rejected the configured GITHUB_TOKEN.",
        "next": "Create a new token or unset GITHUB_TOKEN to use anonymous access.",
    },
    "download_failed": {
        "what": "Download failed for {url}.",
        "next": "Check network access and retry with `curl -fLO {url}`.",
    },
    "checksum_mismatch": {
        "what": "Checksum mismatch for {filename}. Expected {expected}, got {actual}.",
        "next": "Delete the download and retry; if it persists, report it upstream.",
    },
    "unsupported_archive": {
        "what": "Unsupported archive format: {path}",
        "next": "Use a release asset ending with `.zip` or `.tar.gz`.",
    },
    "composer_signature": {
        "what": "The Composer installer signature does not match.",
        "next": "Install Composer manually from https://getcomposer.org/download/.",
    },
    "composer_install_failed": {
        "what": "Composer could not install the dependencies in {path}.",
        "next": "Run `cd {path} && sudo -u www-data composer install --no-dev` to see the error.",
    },
    "database_create_failed": {
        "what": "Could not create database {database}.",
        "next": "Check that MariaDB is running with `systemctl status mariadb`.",
    },
    "database_user_failed": {
        "what": "Could not create or grant database user {user}.",
        "next": "Create it manually: `mysql -u root -e \"CREATE USER '{user}'@'localhost' ...\"`.",
    },
    "migration_failed": {
        "what": "Database migrations failed in {path}.",
        "next": "Run `cd {path} && sudo -u www-data php artisan migrate --force` to see the error.",
    },
    "app_key_failed": {
        "what": "Could not generate a valid application key in {path}.",
        "next": "Run `cd {path} && sudo -u www-data php artisan key:generate --force`.",
    },
    "apache_config_invalid": {
        "what": "Apache rejected the site configuration {site}.",
        "next": "Inspect the output of `apachectl configtest` and fix {path}.",
    },
    "certificate_failed": {
        "what": "Could not obtain a TLS certificate for {domain}.",
        "next": "Make sure {domain} resolves to this host and ports 80/443 are open, then run "
        "`certbot certonly --standalone -d {domain}`.",
    },
    "cron_write_failed": {
        "what": "Could not update the cron file {path}.",
        "next": "Check permissions on {path} and that the cron service is installed.",
    },
    "update_rolled_back": {
        "what": "The {app} update failed and the previous installation was restored from {backup}.",
        "next": "Review the log file, fix the cause and re-run the installer.",
    },
    "backup_incomplete": {
        "what": "The backup of {path} is incomplete (missing: {missing}); nothing was changed.",
        "next": "Check free disk space and that {path} is a complete installation, then re-run the installer.",
    },
    "restore_failed": {
        "what": "Restoring {path} from {backup} failed.",
        "next": "Restore manually with `rm -rf {path} && mv {backup} {path}`.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
