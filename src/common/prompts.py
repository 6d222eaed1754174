"""
Confirmation prompts.

Destructive operations ask a Confirmer before proceeding so tests and
automation can answer without a terminal.
"""

from __future__ import annotations

import sys
from typing import Callable

from .exceptions import UserCancelled


class Confirmer:
    """Yes/no confirmation capability."""

    def confirm(self, prompt: str) -> bool:
        raise NotImplementedError

    def require(self, prompt: str) -> None:
        """
        Ask for confirmation, raising when declined.

        Raises:
            UserCancelled: If the answer is no.
        """
        if not self.confirm(prompt):
            raise UserCancelled(prompt)


class StaticConfirmer(Confirmer):
    """Always gives the same answer (used for --force and in tests)."""

    def __init__(self, answer: bool):
        self.answer = answer
        self.prompts = []

    def confirm(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self.answer


class InteractiveConfirmer(Confirmer):
    """
    Reads a ``[y/N]`` answer from the terminal.

    A non-interactive stdin counts as "no", matching the default answer.
    """

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        stdin=None,
    ):
        self._input = input_func
        self._stdin = stdin

    def confirm(self, prompt: str) -> bool:
        stdin = self._stdin if self._stdin is not None else sys.stdin
        if self._input is input and not (stdin and stdin.isatty()):
            return False
        try:
            response = self._input(f"{prompt} [y/N] ")
        except EOFError:
            return False
        return response.strip().lower() in ("y", "yes")
