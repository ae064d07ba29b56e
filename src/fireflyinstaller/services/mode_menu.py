"""Start-up mode selector: a countdown prompt backed by a small state machine."""

import os
import select
import sys
import termios
import time
import tty
from enum import Enum
from typing import Callable, NamedTuple, Optional


class RunMode(Enum):
    INTERACTIVE = "interactive"
    NON_INTERACTIVE = "non-interactive"
    CANCEL = "cancel"


class MenuState(NamedTuple):
    name: str
    detail: Optional[int] = None
    mode: Optional[RunMode] = None

    @property
    def is_final(self) -> bool:
        return self.name == "confirmed"


ROOT_PROMPT = MenuState("root")
MENU_ROOT = MenuState("menu")


def menu_detail(page: int) -> MenuState:
    return MenuState("detail", detail=page)


def confirmed(mode: RunMode) -> MenuState:
    return MenuState("confirmed", mode=mode)


def transition(state: MenuState, key: Optional[str]) -> MenuState:
    """Next menu state for a key press; ``None`` means the countdown expired."""
    choice = (key or "").strip().lower()

    if state.name == "root":
        if choice == "m":
            return MENU_ROOT
        if choice == "i":
            return confirmed(RunMode.INTERACTIVE)
        if choice == "c":
            return confirmed(RunMode.CANCEL)
        return confirmed(RunMode.NON_INTERACTIVE)

    if state.name == "menu":
        if choice in ("1", "2", "3"):
            return menu_detail(int(choice))
        if choice == "4":
            return ROOT_PROMPT
        if choice == "5":
            return confirmed(RunMode.CANCEL)
        return state

    if state.name == "detail":
        if choice == "2":
            return MENU_ROOT
        if choice == "1":
            return ROOT_PROMPT
        if choice == "3":
            return confirmed(RunMode.CANCEL)
        return state

    return state


ROOT_TEXT = (
    "[bold]Firefly III installer[/bold]\n"
    "Press [bold]M[/bold] for the menu, [bold]I[/bold] for interactive mode, "
    "[bold]C[/bold] to cancel or [bold]Enter[/bold] to continue non-interactively."
)
MENU_TEXT = (
    "[bold]Menu[/bold]\n"
    "  1) About interactive mode\n"
    "  2) About non-interactive mode\n"
    "  3) Environment variables for unattended runs\n"
    "  4) Back\n"
    "  5) Exit"
)
DETAIL_TEXT = {
    1: (
        "Interactive mode asks for the database type and credentials, the domain and e-mail for TLS, "
        "the cron hour, PHP upgrades, update confirmation and a passphrase for the credentials file."
    ),
    2: (
        "Non-interactive mode uses defaults for every question: a generated MySQL database and user, "
        "no domain, the cron job at 03:00 and automatic updates."
    ),
    3: (
        "NON_INTERACTIVE, HAS_DOMAIN, DOMAIN_NAME, EMAIL_ADDRESS, DB_NAME, DB_USER, DB_PASS, "
        "CRON_HOUR, GITHUB_TOKEN, PHP_VERSION, FIREFLY_INSTALL_DIR and IMPORTER_INSTALL_DIR."
    ),
}
DETAIL_FOOTER = "  1) Back to start  2) Back to menu  3) Exit"


def read_key(timeout: Optional[float], stream=None) -> Optional[str]:
    """Read one key press from a terminal, or ``None`` when ``timeout`` expires."""
    stream = stream or sys.stdin
    fd = stream.fileno()
    previous = termios.tcgetattr(fd)
    try:
        tty.setcbreak(fd)
        ready, _, _ = select.select([stream], [], [], timeout)
        if not ready:
            return None
        return os.read(fd, 1).decode("utf-8", errors="ignore")
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, previous)


class ModeSelector:
    """Drives ``transition`` with key presses and renders each screen."""

    def __init__(self, console, countdown_seconds: int = 30, key_reader: Callable[[Optional[float]], Optional[str]] = read_key):
        self.console = console
        self.countdown_seconds = countdown_seconds
        self.key_reader = key_reader

    def _countdown(self) -> Optional[str]:
        deadline = time.monotonic() + self.countdown_seconds
        with self.console.status("") as status:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                status.update(f"Continuing in non-interactive mode in {int(remaining) + 1}s...")
                key = self.key_reader(min(1.0, remaining))
                if key is not None:
                    return key

    def select(self) -> RunMode:
        state = ROOT_PROMPT
        while not state.is_final:
            if state.name == "root":
                self.console.print(ROOT_TEXT)
                key = self._countdown()
            elif state.name == "menu":
                self.console.print(MENU_TEXT)
                key = self.key_reader(None)
            else:
                self.console.print(DETAIL_TEXT[state.detail])
                self.console.print(DETAIL_FOOTER)
                key = self.key_reader(None)
            state = transition(state, key)
        return state.mode
