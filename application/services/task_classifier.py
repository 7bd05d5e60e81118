# application/services/task_classifier.py
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from domain.models.work_item import Classification, Complexity, Priority, TaskType, WorkItem
from shared.logging import logger

# Order doubles as the tie-break order between equally scored types
TYPE_PRECEDENCE: Tuple[TaskType, ...] = (
    TaskType.BUG_FIX,
    TaskType.FEATURE,
    TaskType.REFACTOR,
    TaskType.TEST,
    TaskType.DOCUMENTATION,
    TaskType.INVESTIGATION,
)

TASK_TYPE_VOCABULARY: Dict[TaskType, Tuple[str, ...]] = {
    TaskType.BUG_FIX: ("fix", "bug", "error", "crash", "broken", "not working",
                       "fails", "failing", "regression", "exception"),
    TaskType.FEATURE: ("implement", "add", "create", "new", "feature", "enhancement",
                       "support", "build"),
    TaskType.REFACTOR: ("refactor", "restructure", "reorganize", "clean up", "cleanup",
                        "simplify", "optimize", "extract"),
    TaskType.TEST: ("test", "tests", "coverage", "unit test", "integration test",
                    "e2e", "flaky"),
    TaskType.DOCUMENTATION: ("docs", "documentation", "readme", "guide", "docstring",
                             "changelog"),
    TaskType.INVESTIGATION: ("investigate", "investigation", "research", "spike",
                             "explore", "root cause", "analyze"),
}

LABEL_TYPE_HINTS: Dict[str, TaskType] = {
    "bug": TaskType.BUG_FIX,
    "bugfix": TaskType.BUG_FIX,
    "feature": TaskType.FEATURE,
    "enhancement": TaskType.FEATURE,
    "refactor": TaskType.REFACTOR,
    "tech-debt": TaskType.REFACTOR,
    "test": TaskType.TEST,
    "tests": TaskType.TEST,
    "docs": TaskType.DOCUMENTATION,
    "documentation": TaskType.DOCUMENTATION,
    "investigation": TaskType.INVESTIGATION,
    "spike": TaskType.INVESTIGATION,
}

TYPE_BASE_SCORE: Dict[TaskType, int] = {
    TaskType.BUG_FIX: 3,
    TaskType.FEATURE: 5,
    TaskType.REFACTOR: 5,
    TaskType.TEST: 3,
    TaskType.DOCUMENTATION: 2,
    TaskType.INVESTIGATION: 4,
    TaskType.OTHER: 2,
}

HEAVY_PATTERNS: Tuple[str, ...] = (
    r"real[- ]?time",
    r"(web ?)?sockets?",
    r"persist(ence|ent)",
    r"presence",
    r"concurren(t|cy)",
    r"distributed",
    r"synchroni[sz]ation",
    r"authentication|oauth",
    r"encrypt(ion)?",
    r"scalab(le|ility)",
    r"cach(e|ing)",
    r"complex|complicated",
    r"major",
    r"large[- ]scale",
)

CROSS_CUTTING_PATTERNS: Tuple[str, ...] = (
    r"migrat(e|ion|ions)",
    r"breaking( changes?)?",
    r"architect(ure|ural)",
    r"cross[- ]cutting",
    r"redesign",
    r"across (all|every|the whole)",
    r"schema changes?",
)

SIMPLE_PATTERNS: Tuple[str, ...] = (
    r"typo",
    r"trivial",
    r"minor",
    r"small",
    r"quick",
    r"simple",
    r"one[- ]liner?",
    r"wording",
    r"rename",
)

PRIORITY_INDICATORS: Dict[str, Tuple[Tuple[str, ...], int]] = {
    "low": (("minor", "nice to have", "future", "someday", "low priority"), -2),
    "high": (("high priority", "important", "urgent", "asap"), 1),
    "critical": (("critical", "blocker", "severe", "emergency", "p0", "outage"), 3),
    "production": (("production", "prod"), 2),
    "audience": (("customer", "customers", "user", "users"), 1),
}

STOP_WORDS = frozenset((
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "as", "is", "was", "are", "were", "be", "been", "being", "have", "has",
    "had", "do", "does", "did", "will", "would", "should", "could", "may", "might",
    "must", "can", "this", "that", "these", "those", "it", "we", "they", "when", "not",
))

FILE_REFERENCE = re.compile(
    r"\b[\w/.-]+\.(py|ts|tsx|js|jsx|java|go|rs|rb|sql|ya?ml|json|toml)\b")
CHECKLIST_ITEM = re.compile(r"^\s*[-*]\s+\[[ xX]\]\s+(.+?)\s*$", re.MULTILINE)
PARALLEL_LABELS = frozenset(("parallel", "fan-out"))

CONFIDENCE_FLOOR = 0.3
CONFIDENCE_CEILING = 0.95
MAX_SCORE = 10


def _compile(words: Sequence[str]) -> Pattern:
    return re.compile(r"\b(" + "|".join(words) + r")\b")


_TYPE_MATCHERS: Dict[TaskType, List[Pattern]] = {
    task_type: [re.compile(r"\b" + re.escape(word) + r"\b") for word in words]
    for task_type, words in TASK_TYPE_VOCABULARY.items()
}
_HEAVY_MATCHERS = [_compile([p]) for p in HEAVY_PATTERNS]
_CROSS_CUTTING_MATCHERS = [_compile([p]) for p in CROSS_CUTTING_PATTERNS]
_SIMPLE_MATCHER = _compile(SIMPLE_PATTERNS)


@dataclass(frozen=True)
class ComplexityBands:
    """Score bands: below simple_below is simple, above complex_above is complex"""
    simple_below: int = 4
    complex_above: int = 7

    def __post_init__(self):
        if self.simple_below > self.complex_above + 1:
            raise ValueError("simple_below must not exceed complex_above + 1")

    def tier_for(self, score: int) -> Complexity:
        if score < self.simple_below:
            return Complexity.SIMPLE
        if score > self.complex_above:
            return Complexity.COMPLEX
        return Complexity.MEDIUM


class TaskClassifier:
    """Keyword and pattern based classification of issue text.

    Classification never raises: empty or unusable input yields an ``other``
    / ``simple`` verdict at the confidence floor so the decision engine always
    has something to act on.
    """

    def __init__(self, bands: Optional[ComplexityBands] = None):
        self.bands = bands or ComplexityBands()

    def classify(self, work_item: WorkItem) -> Classification:
        try:
            if not (work_item.title or "").strip() and not (work_item.description or "").strip():
                logger.info("Empty work item, using fallback classification",
                            issue_id=work_item.issue_id)
                return self._fallback(work_item)

            classification = self._classify(work_item)

            logger.info("Task classification complete",
                        issue_id=work_item.issue_id,
                        task_type=classification.task_type.value,
                        complexity=classification.complexity.value,
                        priority=classification.priority.value,
                        complexity_score=classification.complexity_score,
                        confidence=classification.confidence)
            return classification

        except Exception as e:
            logger.error("Classification failed, using fallback",
                         issue_id=getattr(work_item, "issue_id", None),
                         error=str(e))
            return self._fallback(work_item)

    def _classify(self, work_item: WorkItem) -> Classification:
        title = (work_item.title or "").lower()
        description = (work_item.description or "").lower()
        text = f"{title}\n{description}"
        labels = tuple(label.lower() for label in work_item.labels)

        type_scores = self._score_types(title, description, labels)
        task_type, top_score, runner_up = self._pick_type(type_scores)

        heavy_hits = sum(1 for m in _HEAVY_MATCHERS if m.search(text))
        cross_cutting_hits = sum(1 for m in _CROSS_CUTTING_MATCHERS if m.search(text))
        simple_hits = len(set(_SIMPLE_MATCHER.findall(text)))

        score = TYPE_BASE_SCORE[task_type]
        score += self._surface_score(description, text)
        score += min(heavy_hits, 4)
        score += min(cross_cutting_hits * 2, 4)
        if work_item.priority_hint in (Priority.HIGH, Priority.CRITICAL):
            score += 1
        score = max(0, min(score, MAX_SCORE))

        complexity = self.bands.tier_for(score)
        priority = work_item.priority_hint or self._derive_priority(text)

        confidence = self._confidence(
            top_score=top_score,
            runner_up=runner_up,
            complexity=complexity,
            description_length=len(description),
            simple_hits=simple_hits,
            cross_cutting=cross_cutting_hits > 0,
        )

        return Classification(
            task_type=task_type,
            complexity=complexity,
            priority=priority,
            complexity_score=score,
            confidence=confidence,
            cross_cutting=cross_cutting_hits > 0,
            checklist_items=tuple(CHECKLIST_ITEM.findall(work_item.description or "")),
            parallel_requested=bool(PARALLEL_LABELS.intersection(labels)),
            keywords=self._extract_keywords(text),
        )

    def _score_types(self, title: str, description: str,
                     labels: Tuple[str, ...]) -> Dict[TaskType, int]:
        scores: Dict[TaskType, int] = {}
        for task_type, matchers in _TYPE_MATCHERS.items():
            score = 0
            for matcher in matchers:
                if matcher.search(title):
                    score += 2
                if matcher.search(description):
                    score += 1
            scores[task_type] = score

        for label in labels:
            hinted = LABEL_TYPE_HINTS.get(label)
            if hinted is not None:
                scores[hinted] += 3
        return scores

    def _pick_type(self, scores: Dict[TaskType, int]) -> Tuple[TaskType, int, int]:
        ranked = sorted(TYPE_PRECEDENCE, key=lambda t: (-scores[t], TYPE_PRECEDENCE.index(t)))
        top, second = ranked[0], ranked[1]
        if scores[top] == 0:
            return TaskType.OTHER, 0, 0
        return top, scores[top], scores[second]

    def _surface_score(self, description: str, text: str) -> int:
        score = 0
        length = len(description)
        if length >= 1500:
            score += 3
        elif length >= 800:
            score += 2
        elif length >= 300:
            score += 1

        files = {match.group(0) for match in FILE_REFERENCE.finditer(text)}
        if len(files) >= 5:
            score += 2
        elif len(files) >= 2:
            score += 1
        return score

    def _derive_priority(self, text: str) -> Priority:
        score = 0
        for words, weight in PRIORITY_INDICATORS.values():
            for word in words:
                if re.search(r"\b" + re.escape(word) + r"\b", text):
                    score += weight

        if score >= 4:
            return Priority.CRITICAL
        if score >= 2:
            return Priority.HIGH
        if score <= -2:
            return Priority.LOW
        return Priority.MEDIUM

    def _confidence(self, top_score: int, runner_up: int, complexity: Complexity,
                    description_length: int, simple_hits: int, cross_cutting: bool) -> float:
        if top_score == 0:
            confidence = 0.4
        else:
            confidence = min(0.5 + 0.1 * top_score, 0.9)
            if runner_up == top_score:
                confidence -= 0.15
            elif top_score - runner_up == 1:
                confidence -= 0.05

        # Conflicting signals: "simple" wording on work that looks large
        if simple_hits:
            if complexity == Complexity.COMPLEX or description_length >= 800:
                confidence -= 0.2
            elif complexity == Complexity.SIMPLE:
                confidence += 0.05
            if cross_cutting:
                confidence -= 0.1

        return round(max(CONFIDENCE_FLOOR, min(confidence, CONFIDENCE_CEILING)), 2)

    def _extract_keywords(self, text: str) -> Tuple[str, ...]:
        words = [w for w in re.sub(r"[^\w\s]", " ", text).split()
                 if len(w) > 2 and w not in STOP_WORDS]
        return tuple(word for word, _ in Counter(words).most_common(10))

    def _fallback(self, work_item: WorkItem) -> Classification:
        priority = getattr(work_item, "priority_hint", None) or Priority.MEDIUM
        return Classification(
            task_type=TaskType.OTHER,
            complexity=Complexity.SIMPLE,
            priority=priority,
            complexity_score=0,
            confidence=CONFIDENCE_FLOOR,
        )
