"""
Morphological tokenizer used by the keyword backend.

The keyword backend only depends on the ``Tokenizer`` protocol. The default
``NltkTokenizer`` uses NLTK pieces that need no downloaded corpora: a
regular-expression word tokenizer with character spans and the Porter
stemmer for the lemma form. Every word token is tagged as a noun; tagging
accuracy is not needed for indexing.
"""

import re
import threading
from dataclasses import dataclass
from typing import List, Optional, Protocol, runtime_checkable

from nltk.stem import PorterStemmer
from nltk.tokenize import RegexpTokenizer

from ..logging_config import configure_logger_for_debug_trace

logger = configure_logger_for_debug_trace(__name__)

# Coarse part-of-speech tags (universal tagset names)
POS_NOUN = "NOUN"
POS_VERB = "VERB"
POS_ADJ = "ADJ"
POS_ADV = "ADV"
POS_INTJ = "INTJ"
POS_DET = "DET"
POS_NUM = "NUM"
POS_PUNCT = "PUNCT"

# Content-word tags worth indexing
INDEXABLE_POS = frozenset({POS_NOUN, POS_VERB, POS_ADJ, POS_ADV, POS_INTJ, POS_DET})

_NUMERIC = re.compile(r'^\d[\d.,]*$')


@dataclass(frozen=True)
class AnalyzedToken:
    """
    One morpheme produced by a tokenizer.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    surface: str
    lemma: str
    pos: str
    offset: int
    reading: Optional[str] = None


@runtime_checkable
class Tokenizer(Protocol):
    """Deterministic text analyzer."""

    def analyze(self, text: str) -> List[AnalyzedToken]:
        ...


class NltkTokenizer:
    """
    Default tokenizer built on NLTK.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a tokenizer.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    WORD_PATTERN = r'\w+|[^\w\s]+'

    def __init__(self):
        self._tokenizer = RegexpTokenizer(self.WORD_PATTERN)
        self._stemmer = PorterStemmer()
        # PorterStemmer keeps an internal cache that is not thread-safe
        self._lock = threading.Lock()

    def analyze(self, text: str) -> List[AnalyzedToken]:
        if not text:
            return []

        tokens = []
        with self._lock:
            for start, end in self._tokenizer.span_tokenize(text):
                surface = text[start:end]
                pos = self._classify(surface)
                lemma = self._stemmer.stem(surface) if pos == POS_NOUN else surface
                tokens.append(AnalyzedToken(
                    surface=surface,
                    lemma=lemma,
                    pos=pos,
                    offset=start,
                ))
        return tokens

    @staticmethod
    def _classify(surface: str) -> str:
        if _NUMERIC.match(surface):
            return POS_NUM
        if not any(ch.isalnum() for ch in surface):
            return POS_PUNCT
        return POS_NOUN
