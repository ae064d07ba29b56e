import pytest

from fireflyinstaller.errors_catalog import actionable_error


def test_actionable_error_formats_message_with_suggested_action():
    message = actionable_error("missing_required_variable", variable="DOMAIN_NAME", condition="HAS_DOMAIN=true")

    assert "DOMAIN_NAME is required when HAS_DOMAIN=true." in message
    assert "Suggested action:" in message


def test_actionable_error_names_manual_command():
    message = actionable_error("migration_failed", path="/var/www/firefly-iii")

    assert "artisan migrate" in message


def test_actionable_error_rejects_unknown_code():
    with pytest.raises(KeyError, match="Unknown error catalog key"):
        actionable_error("no_such_code")
