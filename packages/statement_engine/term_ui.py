"""Tiny terminal UI helpers (prompt_toolkit-based).

Kept apart from the reconciliation logic so the human-in-the-loop prompts are
easy to test in isolation with a pipe input.
"""

from __future__ import annotations

from collections.abc import Sequence

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.validation import ValidationError, Validator

from .card_matcher import CardSuggestions, SuggestionOption
from .categories import TRANSACTION_CATEGORIES


def resolve_option(
    options: Sequence[SuggestionOption], text: str
) -> SuggestionOption | None:
    """Map typed input onto an option.

    Empty input picks the recommended option. A number picks by 1-based
    position; otherwise an option id or a case-insensitive label prefix is
    accepted when it identifies exactly one option.
    """

    value = text.strip()
    if not value:
        return next((o for o in options if o.recommended), None)
    if value.isdigit():
        idx = int(value) - 1
        return options[idx] if 0 <= idx < len(options) else None
    lower = value.lower()
    for opt in options:
        if opt.id.lower() == lower or opt.label.lower() == lower:
            return opt
    prefixed = [o for o in options if o.label.lower().startswith(lower)]
    return prefixed[0] if len(prefixed) == 1 else None


def _session_with(kb: KeyBindings, session: PromptSession | None) -> PromptSession:
    if session is None:
        return PromptSession(key_bindings=kb)
    return PromptSession(
        input=getattr(session, "input", None),
        output=getattr(session, "output", None),
        key_bindings=kb,
    )


def render_suggestions(suggestions: CardSuggestions) -> str:
    lines = [suggestions.title, suggestions.message]
    for pos, opt in enumerate(suggestions.options, start=1):
        marker = " (recommended)" if opt.recommended else ""
        lines.append(f"  {pos}. {opt.label}{marker}")
        for reason in opt.reasons:
            lines.append(f"       - {reason}")
    return "\n".join(lines)


def select_card_option(
    suggestions: CardSuggestions,
    *,
    session: PromptSession | None = None,
    message: str = "Choose an option (number, Enter for recommended, Esc to skip): ",
) -> SuggestionOption | None:
    """Ask which card a statement belongs to.

    Returns the chosen option, or ``None`` when canceled with Esc.
    """

    options = suggestions.options
    if not options:
        return None

    kb = KeyBindings()

    @kb.add("escape", eager=True)
    def _(event) -> None:  # pragma: no cover - exercised indirectly
        event.app.exit(result=None)

    class _OptionValidator(Validator):
        def validate(self, document) -> None:
            if resolve_option(options, document.text) is None:
                raise ValidationError(
                    message=f"Enter a number between 1 and {len(options)} or an option label."
                )

    completer = WordCompleter(
        [o.label for o in options], ignore_case=True, match_middle=True, sentence=True
    )
    sess = _session_with(kb, session)
    result = sess.prompt(
        message,
        completer=completer,
        validator=_OptionValidator(),
        validate_while_typing=False,
        key_bindings=kb,
    )
    if result is None:
        return None
    return resolve_option(options, result)


def prompt_category(
    description: str,
    *,
    default: str,
    session: PromptSession | None = None,
) -> str | None:
    """Ask for the category of ``description``; Enter keeps ``default``.

    Returns a known category key, or ``None`` when canceled with Esc.
    """

    keys = list(TRANSACTION_CATEGORIES)
    kb = KeyBindings()

    @kb.add("escape", eager=True)
    def _(event) -> None:  # pragma: no cover - exercised indirectly
        event.app.exit(result=None)

    class _CategoryValidator(Validator):
        def validate(self, document) -> None:
            text = document.text.strip().lower()
            if text and text not in TRANSACTION_CATEGORIES:
                raise ValidationError(message="Unknown category; press Tab to list them.")

    sess = _session_with(kb, session)
    result = sess.prompt(
        f"Category for {description!r} [{default}]: ",
        completer=WordCompleter(keys, ignore_case=True, sentence=True),
        validator=_CategoryValidator(),
        validate_while_typing=False,
        key_bindings=kb,
    )
    if result is None:
        return None
    return result.strip().lower() or default


__all__ = [
    "prompt_category",
    "render_suggestions",
    "resolve_option",
    "select_card_option",
]
