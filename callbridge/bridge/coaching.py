"""Scoring for Spanish practice calls.

Learner utterances are classified with small fixed word lists; the AI's
own speech is scanned for the marker phrases the coaching instructions
tell it to use.  At hang-up the counters become a 0-100 score and a
CEFR-style level.
"""

from __future__ import annotations

import re
import unicodedata

from callbridge.models.caller import CoachingMetrics
from callbridge.prompts import OPT_OUT_MARKER, REPEAT_MARKER, SIMPLIFY_MARKER

BASE_SCORE = 50
LEVELS = ("A0", "A1", "A2", "B1")

SPANISH_WORDS = frozenset(
    """
    hola buenos buenas dias tardes noches gracias si yo tu el ella nosotros
    soy eres es somos son estoy esta estamos tengo tiene tienes te se mi mis
    su sus muy bien mal como que donde cuando porque pero tambien y o un una
    unos unas la las los del al con sin para por de en mucho poco hoy manana
    ayer comida familia casa trabajo escuela gusta gustan quiero puedo vivo
    hermano hermana madre padre hijo hija amigo amiga agua cafe libro perro gato
    adios hasta luego llamo nombre anos vez ahora siempre nunca
    """.split()
)

ENGLISH_WORDS = frozenset(
    """
    the a an i you he she we they is are am was were do does did have has
    my your his her our their and or but because what where when why how
    yes okay ok hello hi thanks thank please sorry like want can cannot
    dont know think mean sure this that with for from about just really
    """.split()
)

_WORD = re.compile(r"[a-z']+")


def _fold(text: str) -> str:
    """Lower-case and strip accents so "más fácil" matches "mas facil"."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.split())


def _words(text: str) -> list[str]:
    return [w.replace("'", "") for w in _WORD.findall(_fold(text))]


_SIMPLIFY = _fold(SIMPLIFY_MARKER).rstrip(".")
_REPEAT = _fold(REPEAT_MARKER).rstrip(".")
_OPT_OUT = _fold(OPT_OUT_MARKER).split(". ")[1]  # "no recibiras mas llamadas"


def record_learner_utterance(metrics: CoachingMetrics, text: str) -> None:
    """Count one learner answer as target-language and/or target-only."""
    words = _words(text)
    if not words:
        return
    spanish = any(w in SPANISH_WORDS for w in words)
    english = any(w in ENGLISH_WORDS for w in words)
    if spanish:
        metrics.target_language_answer_count += 1
        if not english:
            metrics.target_language_only_answer_count += 1


def record_ai_speech(metrics: CoachingMetrics, text: str) -> None:
    """Pick up simplify / repeat / opt-out markers in one AI turn."""
    folded = _fold(text)
    metrics.simplification_count += folded.count(_SIMPLIFY)
    metrics.repeat_count += folded.count(_REPEAT)
    if _OPT_OUT in folded:
        metrics.opted_out = True


def compute_score(metrics: CoachingMetrics) -> int:
    score = BASE_SCORE
    if metrics.target_language_only_answer_count >= 1:
        score += 20
    if metrics.target_language_answer_count >= 2:
        score += 20
    score -= 10 * metrics.simplification_count
    return max(0, min(100, score))


def level_for_score(score: int) -> str:
    if score <= 25:
        return LEVELS[0]
    if score <= 50:
        return LEVELS[1]
    if score <= 75:
        return LEVELS[2]
    return LEVELS[3]


def describe_call(metrics: CoachingMetrics, score: int, level: str) -> str:
    """One-line summary stored on the call log."""
    return (
        f"Score {score} ({level}): {metrics.target_language_answer_count} Spanish "
        f"answer(s), {metrics.target_language_only_answer_count} Spanish-only, "
        f"{metrics.simplification_count} simplification(s), "
        f"{metrics.repeat_count} repeat(s)"
        + (", opted out" if metrics.opted_out else "")
        + "."
    )
