"""
Prompt classification for routing decisions.

Two paths produce a Classification:
1. AI path - a lightweight backend judges category/complexity/tier and
   replies with a small JSON object.
2. Pattern path - deterministic keyword rules plus a length bump. Used when
   the backend is unreachable, its reply doesn't parse, or AI
   classification is skipped, so classification never blocks dispatch.

Results are cached by a fingerprint of the prompt's head.
"""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import json
import logging
import re
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from .config import ClassifierConfig, DispatchConfig
from .cost_tracker import estimate_tokens
from .providers import ProviderRegistry
from .types import (
    Classification,
    ClassificationParseError,
    ClassificationSource,
    DispatchError,
    TaskCategory,
    Tier,
)

logger = logging.getLogger(__name__)

CLASSIFIER_SYSTEM_PROMPT = """You classify requests for a model router.

Reply with ONLY a JSON object, no prose:
{"category": "<code|debugging|analysis|creative|summarization|translation|planning|factual|general>",
 "complexity": <integer 1-10>,
 "tier": "<lite|standard|pro>"}

complexity 1-3: short lookups and rewrites. 4-7: typical coding or analysis.
8-10: multi-step reasoning, large designs, long documents."""

DEFAULT_COMPLEXITY = 5

# Expected completion size by tier, added to the prompt estimate
OUTPUT_ALLOWANCE: dict[Tier, int] = {
    Tier.LITE: 256,
    Tier.STANDARD: 1024,
    Tier.PRO: 2048,
}

# Character lengths beyond which complexity is bumped by one
LENGTH_THRESHOLDS = (1000, 2000)


class ClassifierReply(BaseModel):
    """Structured reply expected from the AI path."""

    category: TaskCategory = TaskCategory.GENERAL
    complexity: int = DEFAULT_COMPLEXITY
    tier: Tier | None = None


class PatternClassifier:
    """Deterministic keyword-to-category rules."""

    PATTERNS: dict[TaskCategory, list[str]] = {
        TaskCategory.DEBUGGING: [
            r"\bdebug\b",
            r"\bfix\b.*\b(bug|error|issue)\b",
            r"\bwhy.*\b(fail|fails|failing|error|crash)\b",
            r"\btroubleshoot\b",
            r"\bnot working\b",
            r"\bstack.?trace\b",
            r"\bexception\b",
            r"\btraceback\b",
        ],
        TaskCategory.CODE: [
            r"\bcode\b",
            r"\bfunction\b",
            r"\bimplement\b",
            r"\bscript\b",
            r"\bclass\b",
            r"\bmethod\b",
            r"\brefactor\b",
            r"\bunit tests?\b",
            r"\bwrite.*\b(code|function|class|program)\b",
            r"```",
        ],
        TaskCategory.ANALYSIS: [
            r"\banalyz",
            r"\bcompare\b",
            r"\bevaluate\b",
            r"\bassess\b",
            r"\bcritique\b",
            r"\breview\b",
            r"\btrade.?offs?\b",
            r"\bimplications\b",
        ],
        TaskCategory.CREATIVE: [
            r"\bwrite\b.*\b(story|poem|essay|song|lyrics)\b",
            r"\bimagine\b",
            r"\binvent\b",
            r"\bbrainstorm\b",
            r"\bgenerate ideas\b",
        ],
        TaskCategory.SUMMARIZATION: [
            r"\bsummari[sz]e\b",
            r"\bsummary\b",
            r"\btl;?dr\b",
            r"\bcondense\b",
            r"\bkey points\b",
        ],
        TaskCategory.TRANSLATION: [
            r"\btranslate\b",
            r"\btranslation\b",
            r"\bin (english|spanish|french|german|polish|japanese|chinese)\b",
        ],
        TaskCategory.PLANNING: [
            r"\bplan\b",
            r"\bstrategy\b",
            r"\broadmap\b",
            r"\bsteps to\b",
            r"\bhow (should|would|can) (i|we)\b",
            r"\barchitect",
            r"\bdesign\b.*\b(system|api|service)\b",
        ],
        TaskCategory.FACTUAL: [
            r"\bwhat is\b",
            r"\bwho is\b",
            r"\bwhen did\b",
            r"\bwhere is\b",
            r"\bdefine\b",
            r"\bhow many\b",
        ],
    }

    BASE_COMPLEXITY: dict[TaskCategory, int] = {
        TaskCategory.FACTUAL: 2,
        TaskCategory.TRANSLATION: 3,
        TaskCategory.SUMMARIZATION: 3,
        TaskCategory.GENERAL: 3,
        TaskCategory.CREATIVE: 4,
        TaskCategory.CODE: 5,
        TaskCategory.DEBUGGING: 6,
        TaskCategory.ANALYSIS: 6,
        TaskCategory.PLANNING: 6,
    }

    # Complexity adjustments, capped at +3 in total
    COMPLEXITY_SIGNALS: dict[str, int] = {
        r"\bentire\b": 1,
        r"\bcodebase\b": 1,
        r"\bcomprehensive\b": 1,
        r"\bthorough\b": 1,
        r"\bcomplex\b": 1,
        r"\bmultiple\b": 1,
        r"\bacross\b": 1,
        r"\bintegrat": 1,
        r"\bdistributed\b": 1,
        r"\bstep.by.step\b": 1,
    }
    SIMPLICITY_SIGNALS = (r"\bquick\b", r"\bsimple\b", r"\bbrief\b", r"\bone.?liner\b")

    def __init__(self) -> None:
        self._compiled: dict[TaskCategory, list[re.Pattern[str]]] = {
            category: [re.compile(p, re.IGNORECASE) for p in patterns]
            for category, patterns in self.PATTERNS.items()
        }
        self._complexity_compiled = [
            (re.compile(p, re.IGNORECASE), score) for p, score in self.COMPLEXITY_SIGNALS.items()
        ]
        self._simplicity_compiled = [re.compile(p, re.IGNORECASE) for p in self.SIMPLICITY_SIGNALS]

    def categorize(self, prompt: str) -> TaskCategory:
        """Category with the most pattern hits; ties keep declaration order."""
        best = TaskCategory.GENERAL
        best_hits = 0
        for category, patterns in self._compiled.items():
            hits = sum(1 for p in patterns if p.search(prompt))
            if hits > best_hits:
                best, best_hits = category, hits
        return best

    def complexity(self, prompt: str, category: TaskCategory) -> int:
        score = self.BASE_COMPLEXITY[category]
        bump = sum(score for pattern, score in self._complexity_compiled if pattern.search(prompt))
        score += min(3, bump)
        if any(p.search(prompt) for p in self._simplicity_compiled):
            score -= 1
        return max(1, min(10, score + length_bump(prompt)))


def length_bump(prompt: str) -> int:
    """+1 complexity for each length threshold the prompt exceeds."""
    return sum(1 for threshold in LENGTH_THRESHOLDS if len(prompt) > threshold)


def fingerprint(prompt: str, chars: int = 500) -> str:
    """Cache key over the head of a prompt."""
    return hashlib.sha256(prompt[:chars].encode("utf-8")).hexdigest()


def parse_classifier_reply(response: str) -> ClassifierReply:
    """Parse the AI path's JSON reply."""
    json_match = re.search(r"\{[^{}]*\}", response, re.DOTALL)
    if not json_match:
        raise ClassificationParseError(f"No JSON found in response: {response[:200]}")

    try:
        data = json.loads(json_match.group())
    except json.JSONDecodeError as e:
        raise ClassificationParseError(f"Invalid JSON in response: {e}") from e

    if not isinstance(data, dict):
        raise ClassificationParseError("Classifier reply is not an object")

    # Missing or null numeric fields take the mid-value
    if data.get("complexity") is None:
        data["complexity"] = DEFAULT_COMPLEXITY

    try:
        return ClassifierReply.model_validate(data)
    except ValidationError as e:
        raise ClassificationParseError(f"Classifier reply failed validation: {e}") from e


class TaskClassifier:
    """
    Classify prompts for routing.

    Caches results for `cache_ttl_s`; cache hits come back tagged
    `source=cache` and touch neither path.
    """

    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        config: ClassifierConfig | None = None,
        backend: str | None = None,
        model: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.config = config or ClassifierConfig()
        self.backend = backend or self.config.backend
        self.model = model or self.config.model
        self.patterns = PatternClassifier()
        self._clock = clock
        self._cache: OrderedDict[str, tuple[Classification, float]] = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"ai": 0, "pattern": 0, "cache_hits": 0, "ai_failures": 0}

    @classmethod
    def from_config(
        cls, config: DispatchConfig, registry: ProviderRegistry | None = None
    ) -> TaskClassifier:
        """Use the configured classifier backend, else the first lite candidate."""
        backend = config.classifier.backend
        model = config.classifier.model
        if backend is None or model is None:
            lite = config.candidates(Tier.LITE)
            first = (lite.local or lite.cloud or [None])[0]
            if first is not None:
                backend, model = first.backend, first.model
        return cls(registry=registry, config=config.classifier, backend=backend, model=model)

    async def classify(self, prompt: str, skip_ai: bool = False) -> Classification:
        """
        Classify a prompt.

        Args:
            prompt: Prompt text
            skip_ai: Go straight to the pattern path

        Returns:
            Classification (never raises for backend or parse problems)
        """
        key = fingerprint(prompt, self.config.fingerprint_chars)
        cached = self._cache_get(key)
        if cached is not None:
            self._stats["cache_hits"] += 1
            return dataclasses.replace(cached, source=ClassificationSource.CACHE)

        result: Classification | None = None
        if not skip_ai and self.config.use_ai:
            result = await self._try_ai_classify(prompt)

        if result is None:
            result = self.classify_with_patterns(prompt)

        self._cache_put(key, result)
        return result

    def classify_with_patterns(self, prompt: str) -> Classification:
        """Deterministic pattern path."""
        self._stats["pattern"] += 1
        category = self.patterns.categorize(prompt)
        complexity = self.patterns.complexity(prompt, category)
        tier = Tier.from_complexity(complexity)
        return Classification.build(
            category=category,
            complexity=complexity,
            estimated_tokens=estimate_tokens(prompt) + OUTPUT_ALLOWANCE[tier],
            source=ClassificationSource.PATTERN,
        )

    async def _try_ai_classify(self, prompt: str) -> Classification | None:
        if self.registry is None or not self.backend or not self.model:
            return None

        if not await self.registry.is_available(self.backend):
            return None

        try:
            response = await asyncio.wait_for(
                self.registry.invoke(
                    self.backend,
                    self.model,
                    messages=[
                        {"role": "system", "content": CLASSIFIER_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt[:4000]},
                    ],
                    max_tokens=100,
                    temperature=0.0,
                ),
                timeout=self.config.timeout_s,
            )
            reply = parse_classifier_reply(response.content)
        except ClassificationParseError as e:
            self._stats["ai_failures"] += 1
            logger.debug(f"Classifier reply unusable, using patterns: {e}")
            return None
        except asyncio.TimeoutError:
            self._stats["ai_failures"] += 1
            logger.warning(f"AI classification exceeded {self.config.timeout_s}s, using patterns")
            return None
        except DispatchError as e:
            self._stats["ai_failures"] += 1
            logger.warning(f"AI classification failed, using patterns: {e}")
            return None
        except Exception:
            self._stats["ai_failures"] += 1
            logger.exception("AI classification raised unexpectedly, using patterns")
            return None

        self._stats["ai"] += 1
        complexity = max(1, min(10, reply.complexity + length_bump(prompt)))
        tier = reply.tier or Tier.from_complexity(complexity)
        return Classification.build(
            category=reply.category,
            complexity=complexity,
            tier=tier,
            estimated_tokens=estimate_tokens(prompt) + OUTPUT_ALLOWANCE[tier],
            source=ClassificationSource.AI,
        )

    def _cache_get(self, key: str) -> Classification | None:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            classification, stored_at = entry
            if self._clock() - stored_at >= self.config.cache_ttl_s:
                del self._cache[key]
                return None
            return classification

    def _cache_put(self, key: str, classification: Classification) -> None:
        with self._lock:
            self._cache[key] = (classification, self._clock())
            self._cache.move_to_end(key)
            while len(self._cache) > self.config.cache_size:
                self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_statistics(self) -> dict[str, Any]:
        total = self._stats["ai"] + self._stats["pattern"] + self._stats["cache_hits"]
        return {
            **self._stats,
            "total": total,
            "cache_size": len(self._cache),
            "cache_hit_rate": self._stats["cache_hits"] / total if total else 0.0,
        }


__all__ = [
    "CLASSIFIER_SYSTEM_PROMPT",
    "ClassifierReply",
    "PatternClassifier",
    "TaskClassifier",
    "fingerprint",
    "length_bump",
    "parse_classifier_reply",
]
