"""Operator prompts that fall back to defaults in non-interactive mode."""

from typing import Callable, Dict, Optional

import click


class Prompter:
    """Wraps ``click`` prompts; non-interactive runs never read stdin."""

    def __init__(self, interactive: bool, console, prompt_func=click.prompt, confirm_func=click.confirm):
        self.interactive = interactive
        self.console = console
        self.prompt_func = prompt_func
        self.confirm_func = confirm_func

    def confirm(self, message: str, default: bool = False, non_interactive_answer: Optional[bool] = None) -> bool:
        if not self.interactive:
            return default if non_interactive_answer is None else non_interactive_answer
        return bool(self.confirm_func(message, default=default))

    def ask(
        self,
        message: str,
        default: Optional[str] = None,
        validator: Optional[Callable[[str], bool]] = None,
        error_message: str = "Invalid value, please try again.",
    ) -> Optional[str]:
        if not self.interactive:
            return default
        while True:
            value = str(self.prompt_func(message, default=default, show_default=default is not None)).strip()
            if validator is None or validator(value):
                return value
            self.console.print(f"[red]{error_message}[/red]")

    def ask_secret(
        self,
        message: str,
        confirm: bool = True,
        allow_empty: bool = True,
        validator: Optional[Callable[[str], bool]] = None,
        error_message: str = "Invalid value, please try again.",
    ) -> str:
        if not self.interactive:
            return ""
        while True:
            value = self.prompt_func(message, default="", hide_input=True, show_default=False)
            if not value:
                if allow_empty:
                    return ""
                self.console.print("[red]A value is required.[/red]")
                continue
            if validator is not None and not validator(value):
                self.console.print(f"[red]{error_message}[/red]")
                continue
            if not confirm:
                return value
            again = self.prompt_func("Repeat to confirm", default="", hide_input=True, show_default=False)
            if again == value:
                return value
            self.console.print("[red]Values do not match, please try again.[/red]")

    def choose(self, message: str, choices: Dict[str, str], default: str) -> str:
        if not self.interactive:
            return default
        for key, label in choices.items():
            self.console.print(f"  [bold]{key}[/bold]) {label}")
        return str(
            self.prompt_func(message, default=default, type=click.Choice(list(choices)), show_choices=False)
        )
