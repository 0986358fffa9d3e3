import contextlib

from prompt_toolkit import PromptSession
from prompt_toolkit.input import create_pipe_input
from prompt_toolkit.output import DummyOutput

from statement_engine.card_matcher import CardSuggestions, SuggestionOption
from statement_engine.models import CardRecord
from statement_engine.term_ui import prompt_category, render_suggestions, resolve_option, select_card_option

BBVA = CardRecord(id="c1", name="BBVA Oro", bank="BBVA", card_number="**** 1234")
HSBC = CardRecord(id="c2", name="HSBC 2Now", bank="HSBC", card_number="**** 9999")

SUGGESTIONS = CardSuggestions(
    action="review_possible",
    title="Some cards look similar",
    message="These cards share some details with the statement.",
    severity="info",
    options=(
        SuggestionOption(
            id="link:c1",
            label='Link to "BBVA Oro" (65%)',
            recommended=False,
            card=BBVA,
            score=65,
            reasons=("Last four digits match (1234)",),
        ),
        SuggestionOption(id="link:c2", label='Link to "HSBC 2Now" (40%)', recommended=False, card=HSBC, score=40),
        SuggestionOption(id="create_new", label="Create a new card", recommended=True),
    ),
)


@contextlib.contextmanager
def pipe_session():
    with create_pipe_input() as pipe:
        sess = PromptSession(input=pipe, output=DummyOutput())
        yield pipe, sess


def test_resolve_option_rules():
    opts = SUGGESTIONS.options
    assert resolve_option(opts, "").id == "create_new"
    assert resolve_option(opts, " 2 ").id == "link:c2"
    assert resolve_option(opts, "4") is None
    assert resolve_option(opts, "0") is None
    assert resolve_option(opts, "LINK:C1").id == "link:c1"
    assert resolve_option(opts, "create").id == "create_new"
    # Ambiguous prefix.
    assert resolve_option(opts, "link to") is None


def test_enter_accepts_recommended_option():
    with pipe_session() as (pipe, sess):
        pipe.send_text("\r")
        result = select_card_option(SUGGESTIONS, session=sess)
        assert result.id == "create_new"
        assert result.creates_new


def test_number_picks_option():
    with pipe_session() as (pipe, sess):
        pipe.send_text("2\r")
        result = select_card_option(SUGGESTIONS, session=sess)
        assert result.card is HSBC


def test_invalid_choice_is_rejected_until_corrected():
    with pipe_session() as (pipe, sess):
        # Out of range, then clear the line (Ctrl-A, Ctrl-K) and pick 1.
        pipe.send_text("7\r\x01\x0b1\r")
        result = select_card_option(SUGGESTIONS, session=sess)
        assert result.id == "link:c1"


def test_no_options_returns_none_without_prompting():
    empty = CardSuggestions(action="select_card", title="t", message="m", severity="info", options=())
    assert select_card_option(empty) is None


def test_render_marks_recommended_and_lists_reasons():
    text = render_suggestions(SUGGESTIONS)
    lines = text.splitlines()
    assert lines[0] == "Some cards look similar"
    assert '  1. Link to "BBVA Oro" (65%)' in lines
    assert "       - Last four digits match (1234)" in lines
    assert lines[-1] == "  3. Create a new card (recommended)"


def test_prompt_category_enter_keeps_default():
    with pipe_session() as (pipe, sess):
        pipe.send_text("\r")
        assert prompt_category("ZQX 001", default="other", session=sess) == "other"


def test_prompt_category_accepts_known_key_case_insensitively():
    with pipe_session() as (pipe, sess):
        pipe.send_text("TRAVEL\r")
        assert prompt_category("ZQX 001", default="other", session=sess) == "travel"
