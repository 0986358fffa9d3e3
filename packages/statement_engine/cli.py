"""CLI for the ``statement_engine`` package.

This module exposes callable command handlers (``cmd_parse``,
``cmd_validate``, ``cmd_reconcile``, ...) and a Typer-based console interface.
Environment variables (``OPENAI_API_KEY``, ``DATABASE_URL`` and the
``STATEMENT_ENGINE_*`` settings) are loaded from a local ``.env`` using
``python-dotenv`` before delegating to command logic. Business logic lives in
``statement_engine.reconcile`` and the component modules.

Input files hold the raw text a model returned for a statement. For
``reconcile`` the path may also be a directory with one reply per page; files
are read in name order.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from typer.models import ArgumentInfo

from .logging_setup import configure_logging
from .models import CardRecord, ExpectedShape

# ---- Small module-level helpers used by CLI commands -------------------------


def _read_text(path: Path) -> str:
    with open(path, encoding="utf-8") as f:
        return f.read()


def _read_pages(path: Path) -> list[str]:
    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.is_file() and not p.name.startswith("."))
        return [_read_text(p) for p in files]
    return [_read_text(path)]


def _load_cards_json(path: Path) -> list[CardRecord]:
    data = json.loads(_read_text(path))
    if isinstance(data, dict):
        data = data.get("cards", [])
    if not isinstance(data, list):
        raise ValueError(f"expected a JSON list of cards in {path}")
    return [CardRecord.model_validate(item) for item in data if isinstance(item, dict)]


def _resolve_database_url(database_url: str | None) -> str | None:
    return database_url or os.getenv("DATABASE_URL") or None


def _to_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


# ---- Command handlers --------------------------------------------------------


def cmd_parse(path: Path, *, shape: str = "object") -> int:
    from .response_parser import parse_ai_response

    try:
        text = _read_text(path)
    except OSError as e:
        print(f"Error: cannot read '{path}': {e}", file=sys.stderr)
        return 1

    result = parse_ai_response(text, shape)
    print(
        _to_json(
            {
                "success": result.success,
                "method": result.method.value,
                "error": result.error,
                "data": result.data,
            }
        )
    )
    return 0


def cmd_validate(path: Path) -> int:
    from .response_parser import parse_statement_response
    from .settings import EngineSettings
    from .validation import (
        format_validation_result,
        get_confidence_score,
        render_validation_report,
        validate_statement,
    )

    try:
        text = _read_text(path)
    except OSError as e:
        print(f"Error: cannot read '{path}': {e}", file=sys.stderr)
        return 1

    settings = EngineSettings.from_env()
    statement, parse_result = parse_statement_response(text)
    if parse_result.is_empty_fallback:
        print(f"Error: no statement data could be extracted ({parse_result.error})", file=sys.stderr)
        return 1
    result = validate_statement(statement, previous_balance_markers=settings.previous_balance_markers)
    print(render_validation_report(format_validation_result(result)))
    print(f"Confidence: {get_confidence_score(result)}%")
    return 0


def _print_outcome(outcome: Any) -> None:
    from .term_ui import render_suggestions
    from .validation import format_validation_result, render_validation_report

    print(f"Decision: {outcome.decision.value}")
    print(f"Parse method: {outcome.parse_result.method.value}")
    print(render_validation_report(format_validation_result(outcome.validation)))
    print(f"Confidence: {outcome.confidence}%")
    counts = outcome.categorization.counts()
    if counts:
        print("Categorization: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
    if outcome.linked_card is not None:
        label = outcome.linked_card.name or outcome.linked_card.id
        print(f"Linked card: {label}")
    if outcome.card_update is not None:
        print("Card update: " + ", ".join(sorted(outcome.card_update.as_dict())))
    if outcome.new_card is not None:
        print(f"New card: {outcome.new_card.name}")
    if outcome.suggestions is not None and outcome.decision.value == "ask_human":
        print(render_suggestions(outcome.suggestions))


def cmd_reconcile(
    path: Path,
    *,
    cards_json: Path | None = None,
    database_url: str | None = None,
    persist: bool = False,
    use_ai: bool = True,
    interactive: bool = False,
) -> int:
    from .ai_client import OpenAITextClient
    from .reconcile import Decision, reconcile_pages
    from .settings import EngineSettings

    try:
        pages = _read_pages(path)
    except OSError as e:
        print(f"Error: cannot read '{path}': {e}", file=sys.stderr)
        return 1

    settings = EngineSettings.from_env()
    url = _resolve_database_url(database_url)
    if persist and not url:
        print("Error: --persist needs --database-url or DATABASE_URL", file=sys.stderr)
        return 1

    cards: list[CardRecord] = []
    patterns: dict[str, Any] = {}
    try:
        if url:
            from db.client import create_schema, session_scope

            from .persistence import load_existing_cards, load_user_category_patterns

            create_schema(database_url=url)
            with session_scope(database_url=url) as session:
                patterns = load_user_category_patterns(session)
                if cards_json is None:
                    cards = load_existing_cards(session)
        # A JSON card list replaces the stored cards, not the learned patterns.
        if cards_json is not None:
            cards = _load_cards_json(cards_json)
    except Exception as e:
        print(f"Error: failed to load existing cards: {e}", file=sys.stderr)
        return 1

    ai_call = None
    if use_ai:
        if os.getenv("OPENAI_API_KEY"):
            ai_call = OpenAITextClient(model=settings.openai_model)
        else:
            print(
                "Warning: OPENAI_API_KEY is not set; AI categorization disabled.",
                file=sys.stderr,
            )

    outcome = reconcile_pages(
        pages,
        existing_cards=cards,
        user_patterns=patterns,
        ai_call=ai_call,
        settings=settings,
    )
    _print_outcome(outcome)

    if outcome.quota_exceeded:
        err = outcome.categorization.quota_error
        blocked = sum(1 for item in outcome.categorization.items if item.quota_blocked)
        print(
            f"AI quota exceeded at transaction {getattr(err, 'index', '?')}; "
            f"{blocked} transaction(s) left unclassified. Switch provider or model "
            "(OPENAI_API_KEY / STATEMENT_ENGINE_OPENAI_MODEL) and run again to finish.",
            file=sys.stderr,
        )

    if outcome.decision is Decision.NO_DATA:
        print("Error: no statement data could be extracted", file=sys.stderr)
        return 1

    selected_card_id: str | None = None
    create_new = False
    if outcome.decision is Decision.ASK_HUMAN and interactive and outcome.suggestions is not None:
        from .term_ui import select_card_option

        choice = select_card_option(outcome.suggestions)
        if choice is None:
            print("Skipped: no card selected.")
        elif choice.creates_new:
            create_new = True
        elif choice.card is None or choice.card.id is None:
            print(f"Skipped: option '{choice.label}' has no stored card id; nothing persisted.")
            return 0
        else:
            selected_card_id = choice.card.id

    if not persist:
        return 0

    try:
        from db.client import create_schema, session_scope

        from .persistence import persist_outcome

        create_schema(database_url=url)
        with session_scope(database_url=url) as session:
            saved = persist_outcome(
                session,
                outcome,
                selected_card_id=selected_card_id,
                create_new=create_new,
            )
    except Exception as e:
        print(f"Error: persistence failed: {e}", file=sys.stderr)
        return 1

    if saved is None:
        print("Nothing persisted: a card must be chosen first (use --interactive).")
    else:
        verb = "created" if saved.created_card else "linked"
        print(f"Persisted statement {saved.statement_id} ({verb} card {saved.card_id})")
    return 0


def cmd_find_duplicates(
    *, cards_json: Path | None = None, database_url: str | None = None
) -> int:
    from .card_matcher import find_existing_duplicates

    url = _resolve_database_url(database_url)
    try:
        if cards_json is not None:
            cards = _load_cards_json(cards_json)
        elif url:
            from db.client import session_scope

            from .persistence import load_existing_cards

            with session_scope(database_url=url) as session:
                cards = load_existing_cards(session)
        else:
            print("Error: provide --cards-json or --database-url", file=sys.stderr)
            return 1
    except Exception as e:
        print(f"Error: failed to load cards: {e}", file=sys.stderr)
        return 1

    groups = find_existing_duplicates(cards)
    if not groups:
        print("No duplicate cards found.")
        return 0
    for n, group in enumerate(groups, start=1):
        print(f"Group {n} (similarity {group.similarity:.2f}):")
        print(f"  keep:      {group.primary.name or group.primary.id}")
        for dup in group.duplicates:
            print(f"  duplicate: {dup.name or dup.id}")
    return 0


def cmd_teach(description: str, category: str, *, database_url: str | None = None) -> int:
    from .categories import is_known_category
    from .persistence import save_user_category_pattern

    if not is_known_category(category):
        print(f"Error: unknown category '{category}'", file=sys.stderr)
        return 1
    url = _resolve_database_url(database_url)
    if not url:
        print("Error: --database-url or DATABASE_URL is required", file=sys.stderr)
        return 1
    try:
        from db.client import create_schema, session_scope

        create_schema(database_url=url)
        with session_scope(database_url=url) as session:
            pattern = save_user_category_pattern(session, description, category)
    except Exception as e:
        print(f"Error: failed to save pattern: {e}", file=sys.stderr)
        return 1
    print(f"Saved: {description!r} -> {pattern.category} (used {pattern.times_used}x)")
    return 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Reconcile AI-extracted credit-card statements against stored cards. "
        "Loads OPENAI_API_KEY and DATABASE_URL from a local .env before running."
    ),
)

# Module-level argument object to satisfy ruff B008 (no calls in parameter
# defaults).
RESPONSE_PATH_ARGUMENT: ArgumentInfo = typer.Argument(
    ...,
    help="File with the raw model reply (or, for reconcile, a directory of per-page replies).",
    exists=False,  # the handler reports missing files
)


def _exit(code: int) -> None:
    if code:
        raise typer.Exit(code)


@app.command("parse")
def parse_cmd(
    path: Annotated[Path, RESPONSE_PATH_ARGUMENT],
    *,
    shape: ExpectedShape = typer.Option(ExpectedShape.OBJECT, help="Expected top-level JSON shape."),
) -> None:
    """Run the tolerant JSON cascade over a model reply and print the result."""

    _exit(cmd_parse(path, shape=shape.value))


@app.command("validate")
def validate_cmd(path: Annotated[Path, RESPONSE_PATH_ARGUMENT]) -> None:
    """Validate the statement in a model reply and print the report."""

    _exit(cmd_validate(path))


@app.command("reconcile")
def reconcile_cmd(
    path: Annotated[Path, RESPONSE_PATH_ARGUMENT],
    *,
    cards_json: Path | None = typer.Option(
        None, help="JSON list of existing cards (instead of the database)."
    ),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    persist: bool = typer.Option(False, help="Write the decision to the database."),
    ai: bool = typer.Option(True, "--ai/--no-ai", help="Use the AI fallback for categorization."),
    interactive: bool = typer.Option(
        False, help="Ask which card to use when the match is ambiguous."
    ),
) -> None:
    """Parse, validate, categorize and match one statement."""

    _exit(
        cmd_reconcile(
            path,
            cards_json=cards_json,
            database_url=database_url,
            persist=persist,
            use_ai=ai,
            interactive=interactive,
        )
    )


@app.command("find-duplicates")
def find_duplicates_cmd(
    *,
    cards_json: Path | None = typer.Option(None, help="JSON list of cards to inspect."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """List groups of stored cards that look like the same card."""

    _exit(cmd_find_duplicates(cards_json=cards_json, database_url=database_url))


@app.command("teach")
def teach_cmd(
    description: str,
    category: str,
    *,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Remember that DESCRIPTION belongs to CATEGORY for future statements."""

    _exit(cmd_teach(description, category, database_url=database_url))


@app.callback()
def _root() -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures package logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


if __name__ == "__main__":  # pragma: no cover
    # Running as a module: `python -m statement_engine.cli`
    app()
