# =============================================================================
# Content Analyzer — readability, keyword table, CTA detection, content score
# =============================================================================
#
# Pure function of the parsed page: no network, no AI.
# Readability is the Scandinavian LIX index (words/sentence + % long words),
# which works for both Norwegian and English copy.
# =============================================================================

import copy
import logging
import re
from collections import Counter

from bs4 import BeautifulSoup

from models import ContentResult, KeywordFrequency, Readability
from scoring import round_half_up, round_score

logger = logging.getLogger("sitepulse-engine")

# Boilerplate that is not the page's own copy
EXCLUDED_SELECTORS = (
    "script, style, nav, header, footer, aside, "
    '[role="navigation"], [role="banner"], [role="contentinfo"]'
)

LONG_WORD_MIN = 7            # LIX: a long word has more than six letters
MIN_SENTENCE_CHARS = 11      # shorter fragments are abbreviations/noise
TOP_KEYWORDS = 15
MAX_CTA_COLLECTED = 10
MAX_CTA_EXPOSED = 5

NOT_ENOUGH_TEXT = "Not enough text"

# (exclusive upper bound, label)
LIX_BANDS = [
    (25, "Very easy"),
    (35, "Easy"),
    (45, "Medium"),
    (55, "Difficult"),
]
LIX_TOP_BAND = "Very difficult"

LIX_DESCRIPTIONS = [
    (25, "Very easy to read, suitable for a broad audience."),
    (35, "Comfortable to read, similar to fiction."),
    (45, "Medium difficulty, like a newspaper article."),
    (55, "Fairly demanding, typical of technical writing."),
]
LIX_TOP_DESCRIPTION = "Very demanding; many readers will struggle with it."

STOP_WORDS = frozenset({
    # Norwegian
    "og", "i", "er", "det", "som", "en", "et", "til", "på", "av", "for", "med",
    "har", "de", "ikke", "om", "fra", "vi", "var", "kan", "den", "så", "men",
    "jeg", "han", "hun", "seg", "eller", "være", "bli", "skal", "vil", "ved",
    "også", "etter", "alle", "nå", "denne", "dette", "sin", "sitt", "sine",
    # English
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need", "dare",
    "and", "or", "but", "if", "then", "else", "when", "at", "from", "by",
    "with", "about", "against", "between", "into", "through",
    "during", "before", "after", "above", "below", "to", "of", "in", "on",
})

_NON_LETTER = re.compile(r"[^a-zæøå]")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")

CTA_SELECTORS = [
    'a[href*="kontakt"]',
    'a[href*="contact"]',
    'a[href*="bestill"]',
    'a[href*="order"]',
    'a[href*="kjøp"]',
    'a[href*="buy"]',
    "button",
    '[class*="cta"]',
    '[class*="btn"]',
    'a[class*="button"]',
]

CTA_KEYWORDS = [
    "kontakt", "contact", "bestill", "order", "kjøp", "buy", "prøv", "try",
    "registrer", "register", "start", "få", "get", "les mer", "read more",
    "last ned", "download", "gratis", "free", "tilbud", "offer",
]


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------

def extract_main_text(soup: BeautifulSoup) -> str:
    """Body text minus navigation chrome, whitespace collapsed."""
    content = copy.copy(soup.body or soup)
    for el in content.select(EXCLUDED_SELECTORS):
        el.decompose()
    return " ".join(content.get_text(" ").split())


def split_sentences(text: str) -> list[str]:
    return [s for s in _SENTENCE_SPLIT.split(text) if len(s.strip()) >= MIN_SENTENCE_CHARS]


# ---------------------------------------------------------------------------
# Readability (LIX)
# ---------------------------------------------------------------------------

def readability_level(index: int) -> str:
    for upper, label in LIX_BANDS:
        if index < upper:
            return label
    return LIX_TOP_BAND


def readability_description(index: int) -> str:
    for upper, text in LIX_DESCRIPTIONS:
        if index < upper:
            return text
    return LIX_TOP_DESCRIPTION


def calculate_readability(words: list[str], sentence_count: int) -> Readability:
    if not words or sentence_count == 0:
        return Readability(index=0, level=NOT_ENOUGH_TEXT)

    long_words = sum(1 for w in words if len(w) >= LONG_WORD_MIN)
    avg_words_per_sentence = len(words) / sentence_count
    long_word_pct = long_words * 100 / len(words)
    index = round_score(avg_words_per_sentence + long_word_pct)

    return Readability(
        index=index,
        level=readability_level(index),
        avg_words_per_sentence=round_half_up(avg_words_per_sentence, 1),
        avg_word_length=round_half_up(sum(len(w) for w in words) / len(words), 1),
    )


# ---------------------------------------------------------------------------
# Keywords
# ---------------------------------------------------------------------------

def normalize_token(word: str) -> str:
    return _NON_LETTER.sub("", word.lower())


def extract_keywords(words: list[str], limit: int = TOP_KEYWORDS) -> list[KeywordFrequency]:
    """Top terms by frequency. Density is a share of ALL words, stop-words included."""
    total = len(words)
    if total == 0:
        return []
    counts = Counter(
        token for token in map(normalize_token, words)
        if len(token) > 2 and token not in STOP_WORDS
    )
    # most_common keeps first-seen order among equal counts
    return [
        KeywordFrequency(word=word, count=count, density=round_half_up(count / total * 1000) / 10)
        for word, count in counts.most_common(limit)
    ]


# ---------------------------------------------------------------------------
# Calls to action
# ---------------------------------------------------------------------------

def _element_text(el) -> str:
    return " ".join(el.get_text().split()).lower()


def detect_ctas(soup: BeautifulSoup) -> list[str]:
    """Up to five distinct CTA phrases: CTA-shaped elements first, then keyword-matching links."""
    found: list[str] = []

    for selector in CTA_SELECTORS:
        for el in soup.select(selector):
            text = _element_text(el)
            if 0 < len(text) < 50 and len(found) < MAX_CTA_COLLECTED:
                found.append(text)

    for a in soup.find_all("a"):
        text = _element_text(a)
        if len(found) >= MAX_CTA_COLLECTED:
            break
        if text and text not in found and any(kw in text for kw in CTA_KEYWORDS):
            found.append(text)

    return list(dict.fromkeys(found))[:MAX_CTA_EXPOSED]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def content_score(word_count: int, readability_index: int, has_cta: bool, keyword_count: int) -> int:
    score = 0

    # ── Length (30) ───────────────────────────────────────────────
    if word_count >= 300:
        score += 30
    elif word_count >= 200:
        score += 20
    elif word_count >= 100:
        score += 10

    # ── Readability (25), newspaper level is the sweet spot ───────
    if 30 <= readability_index <= 50:
        score += 25
    elif 25 <= readability_index <= 55:
        score += 15
    else:
        score += 5

    # ── CTA (20) ──────────────────────────────────────────────────
    if has_cta:
        score += 20

    # ── Keyword diversity (25) ────────────────────────────────────
    if keyword_count >= 10:
        score += 25
    elif keyword_count >= 5:
        score += 15
    else:
        score += 5

    return min(100, score)


def analyze_content(soup: BeautifulSoup) -> ContentResult:
    text = extract_main_text(soup)
    words = text.split()
    sentences = split_sentences(text)

    readability = calculate_readability(words, len(sentences))
    keywords = extract_keywords(words)
    ctas = detect_ctas(soup)

    score = content_score(len(words), readability.index, bool(ctas), len(keywords))
    logger.info(
        f"[Content] {len(words)} words, LIX {readability.index} ({readability.level}), "
        f"{len(keywords)} keywords, {len(ctas)} CTAs → {score}"
    )

    return ContentResult(
        word_count=len(words),
        character_count=len(text),
        sentence_count=len(sentences),
        paragraph_count=len(soup.find_all("p")),
        readability=readability,
        keywords=keywords,
        has_cta=bool(ctas),
        cta_elements=ctas,
        score=score,
    )
