"""
Heuristic query segmenter.

Decomposes a query into segments using surface patterns only; no model call is
made here. Strategies are tried in order: comparison, sequential, complex,
simple. Model and tool fields on the emitted segments are suggestions; callers
decide what actually runs.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Tuple

import structlog

from libs.common.settings import SegmentationSettings, get_settings
from segmentation.schemas.segment import (
    AssignedTool,
    ComplexityTier,
    SearchStrategy,
    Segment,
    SegmentationStrategy,
    SegmentType,
)

logger = structlog.get_logger(__name__)

QueryComplexity = Literal["simple", "moderate", "complex"]

COMPARISON_PATTERN = re.compile(r"\b(compare|versus|vs|difference|better)\b")
SEQUENCE_PATTERN = re.compile(r"\b(after|before|then|next|following)\b")
SEQUENCE_SPLIT_PATTERN = re.compile(r"\b(?:then|after|next|following)\b", re.IGNORECASE)
VERSUS_SPLIT_PATTERN = re.compile(r"\b(?:vs\.?|versus)(?=\s|$)", re.IGNORECASE)
TOKEN_PATTERN = re.compile(r"[A-Za-z0-9][\w+#.\-]*")

# Lowercase tech terms recognised even when not capitalized, with display form
KNOWN_TECH_TERMS: Dict[str, str] = {
    "react": "React",
    "vue": "Vue",
    "angular": "Angular",
    "node": "Node",
    "python": "Python",
    "javascript": "JavaScript",
    "typescript": "TypeScript",
    "java": "Java",
    "rust": "Rust",
}

# Capitalized words that start sentences or carry intent, never entities
STOP_WORDS = frozenset(
    {
        "a", "about", "after", "an", "and", "are", "before", "best", "better",
        "between", "can", "compare", "comparing", "describe", "difference", "do",
        "does", "explain", "find", "first", "following", "for", "from", "give",
        "how", "i", "in", "is", "list", "next", "of", "on", "or", "please",
        "research", "should", "show", "summarize", "tell", "than", "the", "then",
        "to", "versus", "vs", "what", "when", "where", "which", "who", "why",
        "with", "worst",
    }
)

INTENT_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("explanation", re.compile(r"\bhow\b")),
    ("definition", re.compile(r"\bwhat\b")),
    ("reasoning", re.compile(r"\bwhy\b")),
    ("comparison", re.compile(r"\b(compare|versus|vs)\b")),
    ("evaluation", re.compile(r"\b(best|better|worst)\b")),
]

ESTIMATED_TOKENS: Dict[str, int] = {
    "entity": 500,
    "synthesis": 800,
    "sequence": 600,
    "intent": 300,
    "simple": 400,
}

SIMPLE_TIER_BY_COMPLEXITY: Dict[str, ComplexityTier] = {
    "simple": "tiny",
    "moderate": "small",
    "complex": "medium",
}

_DOCUMENT_HINTS = ("document", "pdf", "paper")


@dataclass
class QueryAnalysis:
    """Surface features of a query used to pick a strategy."""

    has_comparison: bool
    has_sequence: bool
    word_count: int
    complexity: QueryComplexity
    entities: List[str] = field(default_factory=list)
    intents: List[str] = field(default_factory=list)

    @property
    def has_multiple_entities(self) -> bool:
        return len(self.entities) > 1


@dataclass
class SegmentationPlan:
    """Segments emitted by the segmenter, before graph construction."""

    strategy: SegmentationStrategy
    segments: List[Segment]
    analysis: Optional[QueryAnalysis] = None


def assign_tool(segment_type: SegmentType, text: str) -> Tuple[AssignedTool, str]:
    """Deterministic tool suggestion per segment type."""
    if segment_type == "entity":
        return "fetch", "Entity lookups benefit from web search APIs"
    if segment_type == "relation":
        return "mcp", "Relationship queries need structured data from MCP servers"
    if segment_type == "constraint":
        return "code_exec", "Constraint application requires code execution for filtering"
    if segment_type == "intent":
        return "fetch", "Intent classification uses the model with web context"
    if segment_type == "context":
        if any(hint in text.lower() for hint in _DOCUMENT_HINTS):
            return "ocr", "Context extraction from documents requires OCR"
        return "fetch", "Context gathering from web sources"
    if segment_type == "comparison":
        return "xmlhttp", "Comparison benefits from parallel data fetching"
    if segment_type == "synthesis":
        return "code_exec", "Synthesis requires aggregation and analysis of earlier findings"
    return "fetch", "Default to fetch for general queries"


def assess_complexity(word_count: int, has_comparison: bool, has_multiple_entities: bool) -> QueryComplexity:
    if word_count < 5:
        return "simple"
    if word_count < 10 and not has_comparison:
        return "moderate"
    if has_comparison or has_multiple_entities or word_count > 15:
        return "complex"
    return "moderate"


def extract_entities(query: str) -> List[str]:
    """Capitalized runs that are not stop words, plus known tech terms."""
    entities: List[str] = []
    run: List[str] = []

    def flush():
        if run:
            entities.append(" ".join(run))
            run.clear()

    for raw in TOKEN_PATTERN.findall(query):
        token = raw.rstrip(".-")
        if not token:
            continue
        lowered = token.lower()
        if lowered in STOP_WORDS:
            flush()
        elif token[0].isupper():
            run.append(token)
        else:
            flush()
            if lowered in KNOWN_TECH_TERMS:
                entities.append(KNOWN_TECH_TERMS[lowered])
    flush()

    seen = set()
    unique: List[str] = []
    for entity in entities:
        key = entity.lower()
        if key not in seen:
            seen.add(key)
            unique.append(entity)
    return unique


def detect_intents(query: str) -> List[str]:
    lower = query.lower()
    intents = [name for name, pattern in INTENT_PATTERNS if pattern.search(lower)]
    return intents or ["factual"]


def split_sequence(query: str) -> List[str]:
    """Split on sequence markers, dropping empty parts and dangling conjunctions."""
    parts = []
    for part in SEQUENCE_SPLIT_PATTERN.split(query):
        cleaned = _clean_fragment(part)
        if cleaned:
            parts.append(cleaned)
    return parts


def split_versus(query: str) -> List[str]:
    """Fallback entity extraction for comparisons written in lower case."""
    pieces = VERSUS_SPLIT_PATTERN.split(query)
    if len(pieces) < 2:
        return []

    entities = []
    for index, piece in enumerate(pieces):
        words = [
            w.strip(".,;:?!") for w in TOKEN_PATTERN.findall(piece)
            if w.strip(".,;:?!").lower() not in STOP_WORDS
        ]
        if not words:
            continue
        # Left of the first marker the entity is the last word, elsewhere the first
        entities.append(words[-1] if index == 0 else words[0])
    return entities if len(entities) >= 2 else []


def comparison_aspect(query: str, entities: List[str]) -> str:
    """Non stop words following the last mentioned entity."""
    lower = query.lower()
    end = -1
    for entity in entities:
        position = lower.rfind(entity.lower())
        if position >= 0:
            end = max(end, position + len(entity))
    if end < 0:
        return ""
    words = [w.strip(".,;:?!") for w in TOKEN_PATTERN.findall(query[end:])]
    return " ".join(w for w in words if w and w.lower() not in STOP_WORDS)


def _clean_fragment(text: str) -> str:
    cleaned = text.strip(" \t\n,;:.")
    changed = True
    while changed:
        changed = False
        for conjunction in ("and", "And"):
            if cleaned.endswith(" " + conjunction) or cleaned == conjunction:
                cleaned = cleaned[: -len(conjunction)].strip(" \t\n,;:.")
                changed = True
            if cleaned.startswith(conjunction + " "):
                cleaned = cleaned[len(conjunction):].strip(" \t\n,;:.")
                changed = True
    return cleaned


class QuerySegmenter:
    """Turns a query into segments using the comparison/sequential/complex/simple strategies."""

    def __init__(self, settings: Optional[SegmentationSettings] = None):
        self.settings = settings or get_settings()

    def analyze(self, query: str) -> QueryAnalysis:
        lower = query.lower()
        has_comparison = bool(COMPARISON_PATTERN.search(lower))
        entities = extract_entities(query)
        word_count = len(query.split())
        return QueryAnalysis(
            has_comparison=has_comparison,
            has_sequence=bool(SEQUENCE_PATTERN.search(lower)),
            word_count=word_count,
            complexity=assess_complexity(word_count, has_comparison, len(entities) > 1),
            entities=entities,
            intents=detect_intents(query),
        )

    def segment(self, query: str) -> SegmentationPlan:
        """Emit segments for ``query``. Never raises on odd input."""
        text = (query or "").strip()
        if not text:
            logger.info("Blank query, emitting trivial segment")
            return SegmentationPlan(strategy="simple", segments=[self._trivial_segment()])

        analysis = self.analyze(text)

        if analysis.has_comparison:
            entities = analysis.entities if len(analysis.entities) >= 2 else split_versus(text)
            if len(entities) >= 2:
                logger.info("Detected comparison query", entities=entities)
                return SegmentationPlan("comparison", self._comparison_segments(text, entities), analysis)

        if analysis.has_sequence:
            parts = split_sequence(text)
            if len(parts) >= 2:
                logger.info("Detected sequential query", parts=len(parts))
                return SegmentationPlan("sequential", self._sequential_segments(parts), analysis)

        if analysis.complexity == "complex":
            logger.info("Detected complex query", entities=analysis.entities)
            return SegmentationPlan("complex", self._complex_segments(text, analysis), analysis)

        logger.info("Simple query, single segment", complexity=analysis.complexity)
        return SegmentationPlan("simple", [self._simple_segment(text, analysis)], analysis)

    def _comparison_segments(self, query: str, entities: List[str]) -> List[Segment]:
        aspect = comparison_aspect(query, entities)
        segments = [
            self._make(
                id=f"entity-{i}",
                text=f"{entity} {aspect}".strip(),
                type="entity",
                priority=2,
                tier="tiny",
                tokens=ESTIMATED_TOKENS["entity"],
                strategy="factual",
            )
            for i, entity in enumerate(entities)
        ]
        heading = f"Compare {aspect}" if aspect else "Compare"
        segments.append(
            self._make(
                id="comparison-synthesis",
                text=f"{heading}: {' vs '.join(entities)}",
                type="synthesis",
                priority=3,
                tier="small",
                tokens=ESTIMATED_TOKENS["synthesis"],
                strategy="comparative",
                dependencies=tuple(s.id for s in segments),
            )
        )
        return segments

    def _sequential_segments(self, parts: List[str]) -> List[Segment]:
        last = len(parts) - 1
        return [
            self._make(
                id=f"sequence-{i}",
                text=part,
                type="synthesis" if i == last else "context",
                priority=i + 1,
                tier="small",
                tokens=ESTIMATED_TOKENS["sequence"],
                strategy="exploratory",
                dependencies=(f"sequence-{i - 1}",) if i > 0 else (),
            )
            for i, part in enumerate(parts)
        ]

    def _complex_segments(self, query: str, analysis: QueryAnalysis) -> List[Segment]:
        intent = analysis.intents[0]
        segments = [
            self._make(
                id="intent",
                text=query,
                type="intent",
                priority=1,
                tier="tiny",
                tokens=ESTIMATED_TOKENS["intent"],
                strategy="factual",
            )
        ]
        entity_ids = []
        for i, entity in enumerate(analysis.entities):
            segment = self._make(
                id=f"entity-{i}",
                text=f"{entity} {intent}",
                type="entity",
                priority=2,
                tier="tiny",
                tokens=ESTIMATED_TOKENS["entity"],
                strategy="factual",
                dependencies=("intent",),
            )
            segments.append(segment)
            entity_ids.append(segment.id)

        segments.append(
            self._make(
                id="synthesis",
                text=query,
                type="synthesis",
                priority=3,
                tier="small",
                tokens=ESTIMATED_TOKENS["synthesis"],
                strategy="comparative",
                dependencies=("intent", *entity_ids),
            )
        )
        return segments

    def _simple_segment(self, query: str, analysis: QueryAnalysis) -> Segment:
        return self._make(
            id="simple",
            text=query,
            type="entity",
            priority=1,
            tier=SIMPLE_TIER_BY_COMPLEXITY[analysis.complexity],
            tokens=ESTIMATED_TOKENS["simple"],
            strategy="factual",
        )

    def _trivial_segment(self) -> Segment:
        return self._make(
            id="simple",
            text="",
            type="entity",
            priority=1,
            tier="tiny",
            tokens=0,
            strategy="factual",
        )

    def _make(
        self,
        id: str,
        text: str,
        type: SegmentType,
        priority: int,
        tier: ComplexityTier,
        tokens: int,
        strategy: SearchStrategy,
        dependencies: Tuple[str, ...] = (),
    ) -> Segment:
        tool, reasoning = assign_tool(type, text)
        return Segment(
            id=id,
            text=text,
            type=type,
            priority=priority,
            dependencies=dependencies,
            estimated_complexity=tier,
            estimated_tokens=tokens,
            search_strategy=strategy,
            recommended_model=self.settings.model_suggestions.get(tier, ""),
            assigned_tool=tool,
            tool_reasoning=reasoning,
        )
