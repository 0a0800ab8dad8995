"""
Word Source — produces the near-synonym pair for a new round.

Implementations:
- CsvWordSource     random row from a CSV file, loaded once through a
                    WordPairCache that is never invalidated
- GeminiWordSource  asks Gemini for a formal/colloquial pair as JSON

generate_pair() returns None when the source is healthy but has nothing to
offer, and raises SourceUnavailable when it cannot be reached or answers
garbage. The Round Manager degrades to FALLBACK_WORD_PAIRS on the latter.
"""
import csv
import json
import logging
import random
import re
import threading
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from google import genai
from google.genai import types

from word_impostor.config import settings
from word_impostor.exceptions import SourceUnavailable
from word_impostor.models.game import WordPair, WordProvenance

logger = logging.getLogger(__name__)


# ── Static fallback pairs (used when the configured source is unavailable) ────
# word_a = formal / dictionary variant, word_b = colloquial / regional variant
FALLBACK_WORD_PAIRS: List[WordPair] = [
    WordPair(word_a="lợn", word_b="heo"),
    WordPair(word_a="ngô", word_b="bắp"),
    WordPair(word_a="dứa", word_b="thơm"),
    WordPair(word_a="bát", word_b="chén"),
    WordPair(word_a="thìa", word_b="muỗng"),
    WordPair(word_a="ô", word_b="dù"),
    WordPair(word_a="lạc", word_b="đậu phộng"),
    WordPair(word_a="vừng", word_b="mè"),
]


def pick_fallback_pair(
    rng: random.Random, pairs: Sequence[WordPair] = FALLBACK_WORD_PAIRS
) -> Optional[WordPair]:
    return rng.choice(list(pairs)) if pairs else None


class WordSource(ABC):
    provenance: WordProvenance

    @abstractmethod
    async def generate_pair(self, room_id: str) -> Optional[WordPair]:
        ...


# ── CSV ───────────────────────────────────────────────────────────────────────

_HEADER_ROWS = {("worda", "wordb"), ("word_a", "word_b")}


class WordPairCache:
    """
    Lazily loads word_a,word_b rows from a CSV file on first use and keeps
    them for the lifetime of the object. Owned by whoever builds the source;
    pass it by reference rather than reloading.
    """

    def __init__(self, path: str):
        self.path = path
        self._pairs: Optional[List[WordPair]] = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._pairs is not None

    def load(self) -> List[WordPair]:
        with self._lock:
            if self._pairs is None:
                self._pairs = self._read()
                logger.info("Loaded %d word pairs from %s", len(self._pairs), self.path)
            return self._pairs

    def _read(self) -> List[WordPair]:
        pairs: List[WordPair] = []
        with open(self.path, newline="", encoding="utf-8") as fh:
            for i, row in enumerate(csv.reader(fh)):
                cells = [c.strip() for c in row]
                if len(cells) < 2 or not cells[0] or not cells[1]:
                    continue
                if i == 0 and (cells[0].lower(), cells[1].lower()) in _HEADER_ROWS:
                    continue
                pairs.append(WordPair(word_a=cells[0], word_b=cells[1]))
        return pairs


class CsvWordSource(WordSource):
    provenance = WordProvenance.CSV

    def __init__(self, cache: WordPairCache, rng: Optional[random.Random] = None):
        self.cache = cache
        self.rng = rng or random.Random()

    async def generate_pair(self, room_id: str) -> Optional[WordPair]:
        try:
            pairs = self.cache.load()
        except OSError as exc:
            raise SourceUnavailable(f"Cannot read word pairs from {self.cache.path}: {exc}") from exc
        if not pairs:
            raise SourceUnavailable(f"No word pairs in {self.cache.path}")
        return self.rng.choice(pairs)


# ── Gemini ────────────────────────────────────────────────────────────────────

LANGUAGE_NAMES = {"vi": "Vietnamese", "en": "English"}

_SYSTEM_PROMPT = (
    "You are an assistant that returns two short {language} phrases/words that are "
    "near-synonyms (same meaning or very close). Output must be valid JSON with exactly "
    'two keys: "wordA" and "wordB". "wordA" should be the more formal / dictionary '
    'variant; "wordB" should be the colloquial / slang or alternate phrasing. Each value '
    "must be a short string (1-3 words). No extra commentary."
)


def parse_word_pair(raw: Optional[str]) -> WordPair:
    """Parse the model's JSON answer; raises SourceUnavailable on anything malformed."""
    if not raw:
        raise SourceUnavailable("Empty response from word model")
    # Strip optional markdown code fences (handles ```json or ``` with any language tag)
    text = raw.strip()
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z]*\n?", "", text)
        text = re.sub(r"\n?```$", "", text.strip())
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SourceUnavailable(f"Word model returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SourceUnavailable("Word model returned a non-object")
    word_a = data.get("wordA", data.get("word_a"))
    word_b = data.get("wordB", data.get("word_b"))
    if not isinstance(word_a, str) or not isinstance(word_b, str) or not word_a.strip() or not word_b.strip():
        raise SourceUnavailable("Word model response is missing wordA/wordB")
    return WordPair(word_a=word_a.strip(), word_b=word_b.strip())


class GeminiWordSource(WordSource):
    provenance = WordProvenance.GEMINI

    def __init__(self, api_key: str, model: str, language: str = "vi", temperature: float = 0.8):
        self.api_key = api_key
        self.model = model
        self.language = language
        self.temperature = temperature
        self._client: Optional[genai.Client] = None

    def _get_client(self) -> genai.Client:
        if not self.api_key:
            raise SourceUnavailable("GEMINI_API_KEY not set")
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def generate_pair(self, room_id: str, prompt_override: Optional[str] = None) -> Optional[WordPair]:
        client = self._get_client()
        language = LANGUAGE_NAMES.get(self.language, self.language)
        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=prompt_override or "Generate one pair.",
                config=types.GenerateContentConfig(
                    system_instruction=_SYSTEM_PROMPT.format(language=language),
                    temperature=self.temperature,
                    max_output_tokens=100,
                    response_mime_type="application/json",
                ),
            )
        except Exception as exc:
            logger.warning("[%s] Gemini word generation failed: %s", room_id, exc)
            raise SourceUnavailable(str(exc)) from exc
        pair = parse_word_pair(response.text)
        logger.info("[%s] Gemini generated a word pair", room_id)
        return pair


_word_source: Optional[WordSource] = None


def get_word_source() -> WordSource:
    """Lazy singleton built from settings.word_source (csv | gemini)."""
    global _word_source
    if _word_source is None:
        if settings.word_source == "gemini":
            _word_source = GeminiWordSource(
                api_key=settings.gemini_api_key,
                model=settings.word_model,
                language=settings.word_language,
            )
        else:
            _word_source = CsvWordSource(WordPairCache(settings.word_pairs_csv))
    return _word_source
