import pytest
from rich.console import Console

from fireflyinstaller.services.mode_menu import (
    MENU_ROOT,
    ROOT_PROMPT,
    ModeSelector,
    RunMode,
    confirmed,
    menu_detail,
    transition,
)


class ScriptedKeys:
    def __init__(self, keys):
        self.keys = list(keys)
        self.timeouts = []

    def __call__(self, timeout):
        self.timeouts.append(timeout)
        return self.keys.pop(0)


@pytest.mark.parametrize(
    "state, key, expected",
    [
        (ROOT_PROMPT, None, confirmed(RunMode.NON_INTERACTIVE)),
        (ROOT_PROMPT, "\n", confirmed(RunMode.NON_INTERACTIVE)),
        (ROOT_PROMPT, "I", confirmed(RunMode.INTERACTIVE)),
        (ROOT_PROMPT, "c", confirmed(RunMode.CANCEL)),
        (ROOT_PROMPT, "m", MENU_ROOT),
        (MENU_ROOT, "2", menu_detail(2)),
        (MENU_ROOT, "4", ROOT_PROMPT),
        (MENU_ROOT, "5", confirmed(RunMode.CANCEL)),
        (MENU_ROOT, "x", MENU_ROOT),
        (menu_detail(3), "1", ROOT_PROMPT),
        (menu_detail(3), "2", MENU_ROOT),
        (menu_detail(3), "3", confirmed(RunMode.CANCEL)),
        (menu_detail(1), "9", menu_detail(1)),
    ],
)
def test_transition(state, key, expected):
    assert transition(state, key) == expected


def test_selector_defaults_to_non_interactive_on_timeout():
    keys = ScriptedKeys([None] * 10)
    selector = ModeSelector(Console(record=True), countdown_seconds=0, key_reader=keys)

    assert selector.select() is RunMode.NON_INTERACTIVE


def test_selector_walks_menu_before_choosing_interactive():
    keys = ScriptedKeys(["m", "1", "1", "i"])
    console = Console(record=True)
    selector = ModeSelector(console, countdown_seconds=30, key_reader=keys)

    assert selector.select() is RunMode.INTERACTIVE
    assert keys.keys == []
    assert "About interactive mode" in console.export_text()
    assert None in keys.timeouts


def test_selector_exit_from_menu_cancels():
    keys = ScriptedKeys(["m", "5"])
    selector = ModeSelector(Console(record=True), countdown_seconds=30, key_reader=keys)

    assert selector.select() is RunMode.CANCEL
