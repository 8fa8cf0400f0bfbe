"""
Structural Features - language-selected extractors and feature hashing.

Extractors turn content into a sparse FeatureSet (feature name -> weight).
hash_features() folds any FeatureSet into a fixed-dimension vector with the
hashing trick, so extractors for different languages can emit different
feature names and still share one vector space.

The default LexicalFeatureExtractor needs no parser: it looks at token-class
distribution, bracket nesting, control-flow keyword shape and size.
"""
import hashlib
import math
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional

import numpy as np

from boltindex.core.errors import FeatureExtractionError
from boltindex.core.logging import get_logger
from boltindex.embedding.vectors import normalize
from boltindex.schema.graph import EdgeFact
from boltindex.schema.pipeline import ContentUnit

logger = get_logger(__name__)

FeatureSet = Dict[str, float]

BIAS_FEATURE = "bias"
MAX_IDENTIFIER_FEATURES = 64

_TOKEN_PATTERN = re.compile(
    r"(?P<string>\"(?:[^\"\\\n]|\\.)*\"|'(?:[^'\\\n]|\\.)*')"
    r"|(?P<number>\b\d+(?:\.\d+)?\b)"
    r"|(?P<identifier>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<operator>[+\-*/%=<>!&|^~]+)"
    r"|(?P<punctuation>[()\[\]{}.,;:])"
)

CONTROL_FLOW_KEYWORDS = (
    "if", "else", "elif", "for", "while", "loop", "match", "switch", "case",
    "try", "except", "catch", "finally", "return", "break", "continue",
    "yield", "await", "raise", "throw",
)

DEFINITION_KEYWORDS = (
    "def", "class", "fn", "function", "struct", "enum", "trait", "impl",
    "interface", "module", "mod", "import", "from", "use", "include",
)

COMMENT_PREFIXES = ("#", "//", "--", "/*", "*", ";")

OPENERS = "([{"
CLOSERS = ")]}"


class StructuralFeatureExtractor:
    """Protocol for per-language structural feature extraction."""

    def extract(self, content: str, language: str) -> FeatureSet:
        """Deterministically map content to a feature set."""
        raise NotImplementedError


class EdgeDiscoverer:
    """Protocol for per-language dependency/edge discovery."""

    def discover(self, unit: ContentUnit, content: str) -> Iterable[EdgeFact]:
        """Yield edge facts found in a unit."""
        raise NotImplementedError


class NullEdgeDiscoverer(EdgeDiscoverer):
    """Discovers nothing; units still contribute their pre-discovered facts."""

    def discover(self, unit: ContentUnit, content: str) -> Iterable[EdgeFact]:
        return []


def _check_content(content) -> str:
    if not isinstance(content, str):
        raise FeatureExtractionError(
            f"Structural input must be text, got {type(content).__name__}"
        )
    if "\x00" in content:
        raise FeatureExtractionError("Structural input contains NUL bytes (binary content?)")
    return content


def _max_nesting(content: str) -> int:
    depth = 0
    deepest = 0
    for ch in content:
        if ch in OPENERS:
            depth += 1
            deepest = max(deepest, depth)
        elif ch in CLOSERS and depth > 0:
            depth -= 1
    return deepest


def _indent_width(line: str) -> int:
    expanded = line.expandtabs(4)
    return len(expanded) - len(expanded.lstrip(" "))


class LexicalFeatureExtractor(StructuralFeatureExtractor):
    """
    Parser-free structural features, usable for any language or plain text.

    Feature families:
    - lang:*      language tag indicator
    - size:*      log-scaled bytes and lines
    - token:*     token-class distribution
    - nest:*      bracket depth and indentation
    - control:*   control-flow keyword density per line
    - define:*    definition/import keyword density per line
    - comment:*   comment line ratio
    - ident:*     most frequent identifiers (term frequency)
    """

    def extract(self, content: str, language: str) -> FeatureSet:
        text = _check_content(content)
        lang = (language or "text").lower()

        features: FeatureSet = {BIAS_FEATURE: 1.0, f"lang:{lang}": 1.0}

        lines = text.splitlines() or [""]
        non_blank = [l for l in lines if l.strip()]
        line_count = max(len(lines), 1)

        features["size:log_bytes"] = math.log1p(len(text.encode("utf-8"))) / 10.0
        features["size:lines"] = min(len(lines) / 1000.0, 1.0)
        features["size:blank_ratio"] = 1.0 - len(non_blank) / line_count

        # Token classes
        counts: Counter = Counter()
        identifiers: Counter = Counter()
        for match in _TOKEN_PATTERN.finditer(text):
            kind = match.lastgroup
            counts[kind] += 1
            if kind == "identifier":
                identifiers[match.group()] += 1
        total_tokens = sum(counts.values())
        if total_tokens:
            for kind, count in counts.items():
                features[f"token:{kind}"] = count / total_tokens

        # Nesting
        features["nest:max_brackets"] = min(_max_nesting(text) / 10.0, 1.0)
        if non_blank:
            indents = [_indent_width(l) for l in non_blank]
            features["nest:avg_indent"] = min(sum(indents) / len(indents) / 16.0, 1.0)
            features["nest:max_indent"] = min(max(indents) / 32.0, 1.0)

        # Control flow and definitions
        for keyword in CONTROL_FLOW_KEYWORDS:
            if identifiers.get(keyword):
                features[f"control:{keyword}"] = identifiers[keyword] / line_count
        for keyword in DEFINITION_KEYWORDS:
            if identifiers.get(keyword):
                features[f"define:{keyword}"] = identifiers[keyword] / line_count

        comment_lines = sum(1 for l in non_blank if l.lstrip().startswith(COMMENT_PREFIXES))
        if non_blank:
            features["comment:ratio"] = comment_lines / len(non_blank)

        # Sorting by (-count, name) keeps the selection deterministic
        top = sorted(identifiers.items(), key=lambda kv: (-kv[1], kv[0]))[:MAX_IDENTIFIER_FEATURES]
        if top:
            total_ident = sum(identifiers.values())
            for name, count in top:
                features[f"ident:{name}"] = count / total_ident

        return features


def _bucket(name: str, dimension: int):
    digest = hashlib.md5(name.encode("utf-8")).digest()
    index = int.from_bytes(digest[:8], "little") % dimension
    sign = 1.0 if digest[8] & 1 == 0 else -1.0
    return index, sign


def hash_features(features: FeatureSet, dimension: int) -> np.ndarray:
    """
    Fold a FeatureSet into a normalized vector of the given dimension.

    Each feature name picks a bucket and a sign from its md5 digest.

    Raises:
        FeatureExtractionError: non-positive dimension, empty or non-finite features
    """
    if dimension <= 0:
        raise FeatureExtractionError(f"Dimension must be positive, got {dimension}")
    if not features:
        raise FeatureExtractionError("Cannot hash an empty feature set")

    vector = np.zeros(dimension, dtype=np.float32)
    for name in sorted(features):
        value = float(features[name])
        if not math.isfinite(value):
            raise FeatureExtractionError(f"Feature {name!r} is not finite: {value}")
        index, sign = _bucket(name, dimension)
        vector[index] += sign * value
    return normalize(vector)


class LanguageRegistry:
    """
    Capability registry keyed by language tag.

    Languages without a registration fall back to the defaults, so the
    embedding core never depends on a concrete language.
    """

    def __init__(
        self,
        default_extractor: Optional[StructuralFeatureExtractor] = None,
        default_discoverer: Optional[EdgeDiscoverer] = None,
    ):
        self.default_extractor = default_extractor or LexicalFeatureExtractor()
        self.default_discoverer = default_discoverer or NullEdgeDiscoverer()
        self._extractors: Dict[str, StructuralFeatureExtractor] = {}
        self._discoverers: Dict[str, EdgeDiscoverer] = {}

    @staticmethod
    def _key(language: Optional[str]) -> str:
        return (language or "text").lower()

    def register(
        self,
        language: str,
        extractor: Optional[StructuralFeatureExtractor] = None,
        discoverer: Optional[EdgeDiscoverer] = None,
    ):
        key = self._key(language)
        if extractor is not None:
            self._extractors[key] = extractor
        if discoverer is not None:
            self._discoverers[key] = discoverer
        logger.debug(
            "language_registered",
            language=key,
            extractor=type(extractor).__name__ if extractor else None,
            discoverer=type(discoverer).__name__ if discoverer else None,
        )

    def extractor_for(self, language: Optional[str]) -> StructuralFeatureExtractor:
        return self._extractors.get(self._key(language), self.default_extractor)

    def discoverer_for(self, language: Optional[str]) -> EdgeDiscoverer:
        return self._discoverers.get(self._key(language), self.default_discoverer)

    @property
    def languages(self) -> List[str]:
        return sorted(set(self._extractors) | set(self._discoverers))
