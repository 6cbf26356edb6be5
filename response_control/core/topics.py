import re
from typing import Iterable

# Order matters: loaded topic maps follow this table, which makes primary-topic ties stable.
TOPIC_PATTERNS: dict[str, re.Pattern[str]] = {
    "sleep": re.compile(
        r"schlaf|schläf|sleep|insomnia|einschlaf|durchschlaf|melatonin|circadian|zirkadian|"
        r"\bnap\b|nickerchen|tiefschlaf|deep sleep|\brem\b|oura|whoop",
        re.IGNORECASE,
    ),
    "training": re.compile(
        r"training|workout|übung|uebung|\bgym\b|krafttraining|kraft\b|wiederholung|\breps?\b|"
        r"hypertroph|zone\s*2|hiit|cardio|squat|kniebeuge|bankdrücken|bench press|deadlift|kreuzheben",
        re.IGNORECASE,
    ),
    "nutrition_timing": re.compile(
        r"intervallfasten|intermittent fasting|\bfasten\b|fasting|16[:/]8|essensfenster|eating window|"
        r"pre[- ]?workout|post[- ]?workout|nach dem training essen|mahlzeiten?timing|meal timing",
        re.IGNORECASE,
    ),
    "nutrition": re.compile(
        r"ernährung|ernaehrung|nutrition|\bessen\b|kalorien|calorie|kcal|protein|makros|macros|"
        r"\bdiät|\bdiet\b|kohlenhydrat|carbs?\b|\bfett\b|mahlzeit|\bmeal",
        re.IGNORECASE,
    ),
    "supplements": re.compile(
        r"supplement|nahrungsergänzung|vitamin|kreatin|creatine|magnesium|omega[- ]?3|zink|zinc|"
        r"ashwagandha|biogena|sunday natural",
        re.IGNORECASE,
    ),
    "longevity_compounds": re.compile(
        r"rapamycin|sirolimus|metformin|\bnmn\b|\bnad\+?|resveratrol|spermidin|fisetin|"
        r"quercetin|akarbose|acarbose|taurin|longevity|langlebigkeit",
        re.IGNORECASE,
    ),
    "hormones": re.compile(
        r"hormon|testosteron|östrogen|oestrogen|estrogen|estradiol|progesteron|\bshbg\b|"
        r"\blh\b|\bfsh\b|cortisol|schilddrüse|thyroid|\btsh\b|\btrt\b|menopause|wechseljahre",
        re.IGNORECASE,
    ),
    "peptides": re.compile(
        r"peptid|semaglutid|tirzepatid|retatrutid|glp-?1|ozempic|wegovy|mounjaro|bpc-?157",
        re.IGNORECASE,
    ),
    "recovery": re.compile(
        r"erholung|recovery|regeneration|muskelkater|soreness|\bhrv\b|deload|ruhetag|rest day|sauna",
        re.IGNORECASE,
    ),
    "bloodwork": re.compile(
        r"blutwert|blutbild|bloodwork|blood test|laborwert|\blabs?\b|\bhba1c|\bldl\b|\bhdl\b|"
        r"\bapob\b|ferritin|\bcrp\b|triglycerid",
        re.IGNORECASE,
    ),
    "motivation": re.compile(
        r"motivation|aufgeben|give up|durchhalten|disziplin|discipline|gewohnheit|habit",
        re.IGNORECASE,
    ),
    "body_composition": re.compile(
        r"körperfett|koerperfett|body fat|muskelmasse|muscle mass|\bgewicht\b|weight loss|"
        r"abnehmen|zunehmen|\bbmi\b|taillenumfang|waist|bio[- ]?age|biologisches alter",
        re.IGNORECASE,
    ),
}


def extract_topics(text: str) -> set[str]:
    if not text:
        return set()
    return {topic for topic, pattern in TOPIC_PATTERNS.items() if pattern.search(text)}


def ordered_topics(topics: Iterable[str]) -> list[str]:
    """Return known topics in table order; unknown names are appended in sorted order."""
    wanted = set(topics)
    known = [topic for topic in TOPIC_PATTERNS if topic in wanted]
    extra = sorted(topic for topic in wanted if topic not in TOPIC_PATTERNS)
    return known + extra
