import pytest

from conftest import FakeCompletionClient, FakeScenario
from response_control.core.intent import (
    NO_PREVIOUS_MESSAGE,
    ClassificationError,
    ConversationAnalysis,
    DetailLevel,
    Intent,
    IntentClassifier,
    Sentiment,
    decode_analysis,
    fallback_analysis,
    fast_path_analysis,
)

LAST_BOT_MESSAGE = "Soll ich dir für morgen einen Trainingsplan mit Zone-2-Einheiten erstellen?"
LONG_QUESTION = "Kannst du mir genauer erklären, wie Schlaf eigentlich funktioniert und was dabei passiert?"


@pytest.mark.parametrize("message", ["ok", "Ok!", "passt", "alles klar.", "ok ne passt", "Danke!", "passt schon"])
def test_fast_path_confirmations(message) -> None:
    analysis = fast_path_analysis(message)
    assert analysis is not None
    assert analysis.intent == Intent.confirmation
    assert analysis.detail_level == DetailLevel.ultra_short
    assert analysis.sentiment == Sentiment.positive
    assert analysis.references_previous is True


@pytest.mark.parametrize("message", ["nein", "Nope.", "passt nicht", "lieber nicht", "heute nicht"])
def test_fast_path_rejections(message) -> None:
    analysis = fast_path_analysis(message)
    assert analysis is not None
    assert analysis.intent == Intent.rejection
    assert analysis.detail_level == DetailLevel.concise


@pytest.mark.parametrize("message", ["Hallo!", "guten Morgen", "hey", "Moin"])
def test_fast_path_greetings(message) -> None:
    analysis = fast_path_analysis(message)
    assert analysis is not None
    assert analysis.intent == Intent.chit_chat
    assert analysis.references_previous is False


@pytest.mark.parametrize(
    "message",
    [
        "Warum ist Schlaf wichtig?",
        "Das passt mir heute leider gar nicht so gut in den Plan",
        "ok, aber was genau meinst du mit Zone 2 Training?",
    ],
)
def test_fast_path_declines_other_messages(message) -> None:
    assert fast_path_analysis(message) is None


def test_fast_path_never_calls_completion_client() -> None:
    fake = FakeCompletionClient(FakeScenario.OK_DEEP_DIVE)
    classifier = IntentClassifier(fake)
    for message in ["ok", "passt", "nein", "Hallo"]:
        classifier.classify(1, message, LAST_BOT_MESSAGE)
    assert fake.calls == []


def test_llm_tier_decodes_analysis_and_passes_context() -> None:
    fake = FakeCompletionClient(FakeScenario.OK_DEEP_DIVE)
    analysis = IntentClassifier(fake, timeout_ms=2500).classify(7, LONG_QUESTION, LAST_BOT_MESSAGE)

    assert analysis.intent == Intent.deep_dive
    assert analysis.detail_level == DetailLevel.extensive
    assert analysis.reasoning == "Wants the basics explained"
    assert len(fake.calls) == 1
    user_id, prompt, timeout_seconds = fake.calls[0]
    assert user_id == 7
    assert LAST_BOT_MESSAGE in prompt
    assert LONG_QUESTION in prompt
    assert timeout_seconds == pytest.approx(2.5)


def test_llm_prompt_marks_conversation_start() -> None:
    fake = FakeCompletionClient(FakeScenario.OK_DEEP_DIVE)
    IntentClassifier(fake).classify(1, LONG_QUESTION, None)
    assert NO_PREVIOUS_MESSAGE in fake.calls[0][1]


def test_llm_tier_accepts_wrapped_json() -> None:
    fake = FakeCompletionClient(FakeScenario.OK_COMMAND_WRAPPED)
    analysis = IntentClassifier(fake).classify(1, "Bitte trag mein Mittagessen mit 600 kcal und 40g Protein ein", None)
    assert analysis.intent == Intent.command
    assert analysis.expects_action is True
    assert analysis.references_previous is True


def test_llm_tier_accepts_legacy_field_names() -> None:
    fake = FakeCompletionClient(FakeScenario.LEGACY_FIELDS)
    analysis = IntentClassifier(fake).classify(1, "Ich bin echt frustriert, nichts klappt diese Woche so wie geplant", None)
    assert analysis.intent == Intent.emotion
    assert analysis.sentiment == Sentiment.frustrated
    assert analysis.detail_level == DetailLevel.concise


def test_llm_tier_replaces_unknown_values_with_defaults() -> None:
    fake = FakeCompletionClient(FakeScenario.INVALID_ENUMS)
    analysis = IntentClassifier(fake).classify(1, LONG_QUESTION, LAST_BOT_MESSAGE)
    assert analysis.intent == Intent.question
    assert analysis.sentiment == Sentiment.neutral
    assert analysis.detail_level == DetailLevel.moderate
    assert analysis.expects_action is True
    assert analysis.references_previous is False
    assert analysis.reasoning == "LLM analysis"


def test_llm_tier_unparseable_response_uses_defaults() -> None:
    fake = FakeCompletionClient(FakeScenario.MALFORMED_JSON)
    analysis = IntentClassifier(fake).classify(1, LONG_QUESTION, LAST_BOT_MESSAGE)
    assert analysis.intent == Intent.question
    assert analysis.detail_level == DetailLevel.moderate
    assert analysis.reasoning == "Parse failed, using default"


@pytest.mark.parametrize("scenario", [FakeScenario.TIMEOUT, FakeScenario.HTTP_ERROR, FakeScenario.NO_CONFIG])
def test_llm_failures_fall_back_to_heuristic(scenario) -> None:
    fake = FakeCompletionClient(scenario)
    analysis = IntentClassifier(fake).classify(1, LONG_QUESTION, LAST_BOT_MESSAGE)
    assert len(fake.calls) == 1
    assert analysis.intent == Intent.question
    assert analysis.detail_level == DetailLevel.moderate
    assert analysis.reasoning == "Fallback: long question"


@pytest.mark.parametrize("scenario", [FakeScenario.TIMEOUT, FakeScenario.HTTP_ERROR])
def test_llm_failures_raise_when_fallback_disabled(scenario) -> None:
    classifier = IntentClassifier(FakeCompletionClient(scenario), fallback_on_error=False)
    with pytest.raises(ClassificationError):
        classifier.classify(1, LONG_QUESTION, LAST_BOT_MESSAGE)


def test_missing_ai_config_falls_back_even_when_fallback_disabled() -> None:
    classifier = IntentClassifier(FakeCompletionClient(FakeScenario.NO_CONFIG), fallback_on_error=False)
    analysis = classifier.classify(1, LONG_QUESTION, LAST_BOT_MESSAGE)
    assert analysis.reasoning == "Fallback: long question"


def test_classifier_without_client_uses_heuristic() -> None:
    analysis = IntentClassifier(None).classify(1, "mach das bitte so wie besprochen", None)
    assert analysis.intent == Intent.question
    assert analysis.reasoning == "Fallback: default analysis"


@pytest.mark.parametrize(
    ("message", "intent", "detail_level", "reasoning"),
    [
        ("mach das so", Intent.confirmation, DetailLevel.concise, "Fallback: short non-question"),
        ("wieso?", Intent.question, DetailLevel.moderate, "Fallback: default analysis"),
        (LONG_QUESTION, Intent.question, DetailLevel.moderate, "Fallback: long question"),
        ("Ich habe heute leider wieder schlecht geschlafen", Intent.question, DetailLevel.moderate, "Fallback: default analysis"),
    ],
)
def test_fallback_analysis_rules(message, intent, detail_level, reasoning) -> None:
    analysis = fallback_analysis(message)
    assert analysis.intent == intent
    assert analysis.detail_level == detail_level
    assert analysis.reasoning == reasoning


@pytest.mark.parametrize(
    "raw",
    [
        '{"intent": 42, "sentiment": ["x"], "detail_level": null}',
        '{"intent": "Deep-Dive", "detail_level": "Ultra Short"}',
        '{}',
        "no json at all",
    ],
)
def test_decode_analysis_always_yields_closed_values(raw) -> None:
    analysis = decode_analysis(raw)
    assert isinstance(analysis, ConversationAnalysis)
    assert analysis.intent in set(Intent)
    assert analysis.sentiment in set(Sentiment)
    assert analysis.detail_level in set(DetailLevel)
    assert analysis.reasoning


def test_decode_analysis_normalizes_spelling_variants() -> None:
    analysis = decode_analysis('{"intent": "Deep-Dive", "detail_level": "Ultra Short"}')
    assert analysis.intent == Intent.deep_dive
    assert analysis.detail_level == DetailLevel.ultra_short


def test_reasoning_is_truncated() -> None:
    analysis = decode_analysis('{"intent":"question","reasoning":"' + "x" * 900 + '"}')
    assert len(analysis.reasoning) == 500
