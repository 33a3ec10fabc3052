# moderation_gateway/analyzer.py
"""Per-message moderation and batch orchestration on top of a backend."""
import asyncio
import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

from .backends import ModerationBackend, build_backend
from .schemas import AnalysisFailure, AnalysisOutcome, AnalysisResult, RiskScores
from .verdict import calculate_scores, parse_verdict

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a content moderator. Analyze the following text and respond with 'safe' "
    "if the content is safe, or 'unsafe' followed by the category codes "
    "(e.g., 'unsafe\\nS1,S2') if any violations are detected."
)
DEFAULT_MAX_CONCURRENCY = 4


class EmptyBatchError(ValueError):
    """Raised when a batch contains no messages."""

    def __init__(self):
        super().__init__("Messages array cannot be empty")


@dataclass(frozen=True)
class ModerationOptions:
    """Settings a ``MessageAnalyzer`` is built with."""
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    model: str = ""
    endpoint_url: str = ""
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    @classmethod
    def from_config(cls, cfg: dict) -> "ModerationOptions":
        section = cfg.get(str(cfg["backend"]["kind"]).lower(), {})
        return cls(
            system_prompt=cfg["moderation"].get("system_prompt") or DEFAULT_SYSTEM_PROMPT,
            model=section.get("model", ""),
            endpoint_url=section.get("base_url", ""),
            max_concurrency=max(1, int(cfg["backend"].get("max_concurrency", DEFAULT_MAX_CONCURRENCY))),
        )


class MessageAnalyzer:
    """Runs messages through a backend and scores the verdicts.

    Holds no per-request state, so one instance serves concurrent requests.
    """

    def __init__(self, backend: ModerationBackend, options: Optional[ModerationOptions] = None):
        self.backend = backend
        self.options = options or ModerationOptions(model=backend.model, endpoint_url=backend.base_url)

    async def analyze_one(self, message: str) -> AnalysisResult:
        """Moderates a single message. Backend errors propagate unchanged."""
        output = await self.backend.analyze(message, self.options.system_prompt)
        verdict = parse_verdict(output)
        result = AnalysisResult(
            content=message,
            scores=RiskScores(**calculate_scores(verdict.violations)),
            is_safe=verdict.is_safe,
        )
        logger.info(
            "Analysis Result - Safe: %s, Threat Score: %.1f, Commercial Score: %.1f",
            result.is_safe,
            result.scores.threat_of_harm,
            result.scores.commercial_solicitation,
        )
        return result

    async def analyze_outcomes(self, messages: Sequence[str]) -> List[AnalysisOutcome]:
        """Moderates every message, returning one outcome per input in input order.

        A failing message yields an ``error`` outcome and never affects the
        others. Raises ``EmptyBatchError`` before any backend call when
        ``messages`` is empty.
        """
        if not messages:
            raise EmptyBatchError()

        semaphore = asyncio.Semaphore(self.options.max_concurrency)

        async def run(message: str) -> AnalysisOutcome:
            async with semaphore:
                try:
                    return AnalysisOutcome(ok=await self.analyze_one(message))
                except Exception as e:
                    logger.warning("Error analyzing message '%s': %s", message, e)
                    return AnalysisOutcome(error=AnalysisFailure(content=message, reason=str(e)))

        return list(await asyncio.gather(*(run(m) for m in messages)))

    async def analyze_batch(self, messages: Sequence[str]) -> List[AnalysisResult]:
        """Moderates a batch, omitting messages whose analysis failed."""
        outcomes = await self.analyze_outcomes(messages)
        return [o.ok for o in outcomes if o.ok is not None]


def build_analyzer(cfg: dict, options: Optional[ModerationOptions] = None, http_client=None) -> MessageAnalyzer:
    """Builds the configured backend from ``options`` and wraps it in an analyzer."""
    options = options or ModerationOptions.from_config(cfg)
    backend = build_backend(cfg, model=options.model, endpoint_url=options.endpoint_url, http_client=http_client)
    return MessageAnalyzer(backend, replace(options, model=backend.model, endpoint_url=backend.base_url))
