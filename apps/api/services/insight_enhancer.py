"""Insight Enhancer: coach-voice rewrites for urgent/high-priority patterns.

One batched Gemini Flash call per generation run. Enrichment, not critical
path:
- Only urgent/high patterns are sent; everything else passes through
- Rewrites are matched to patterns by position in the response
- A rewrite is kept only if it is longer than MIN_REWRITE_CHARS once the
  leading "N. " is stripped
- Any failure (no client, API error, unparseable output) keeps the
  original descriptions. enhance() never raises.
"""
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, List, Optional, Tuple

from google import genai
from google.genai import types as genai_types

from core.config import settings
from services.pattern_detector import DetectedPattern, InsightPriority

logger = logging.getLogger(__name__)


ENHANCER_TEMPERATURE = 0.4
ENHANCER_MAX_TOKENS = 800
MIN_REWRITE_CHARS = 20

ENHANCED_PRIORITIES = frozenset({InsightPriority.URGENT, InsightPriority.HIGH})

SYSTEM_PROMPT = """You are a cycling coach providing brief, actionable insights.
Keep responses concise (1-2 sentences max).
Be encouraging but direct.
Focus on what the athlete should do, not just what the data shows."""

_NUMBER_PREFIX_RE = re.compile(r"^\d+\.\s*")


@dataclass
class EnhancementResult:
    """Patterns after enhancement plus telemetry for the generation log."""
    patterns: List[DetectedPattern]
    model_used: Optional[str] = None  # None when no call was made or it failed
    tokens_used: int = 0
    enhanced_count: int = 0
    error: Optional[str] = None


def get_gemini_client() -> Optional[Any]:
    """Gemini client from settings, or None when not configured."""
    if not settings.INSIGHT_ENHANCEMENT_ENABLED or not settings.GOOGLE_API_KEY:
        return None
    try:
        return genai.Client(api_key=settings.GOOGLE_API_KEY)
    except Exception as e:
        logger.warning(f"[InsightEnhancer] Could not initialize Gemini client: {e}")
        return None


def build_prompt(patterns: List[DetectedPattern]) -> str:
    numbered = "\n\n".join(
        f"{i + 1}. [{p.type.value.upper()}] {p.title}: {p.description}"
        for i, p in enumerate(patterns)
    )
    return (
        "Enhance these training insights with personalized coaching advice. "
        "Keep each under 2 sentences.\n\n"
        f"{numbered}\n\n"
        "Return each enhanced insight on a new line, numbered to match."
    )


def parse_rewrites(raw_text: str) -> List[str]:
    """Non-blank response lines with any leading "N. " removed."""
    lines = [line for line in (raw_text or "").split("\n") if line.strip()]
    return [_NUMBER_PREFIX_RE.sub("", line.strip()).strip() for line in lines]


class InsightEnhancer:
    """Rewrites high-priority pattern descriptions through Gemini."""

    def __init__(self, client: Any = None, model: Optional[str] = None):
        self.client = client
        self.model = model or settings.INSIGHT_ENHANCER_MODEL

    def _call(self, prompt: str) -> Tuple[str, int]:
        """Returns (text, total_tokens). Raises on failure."""
        config = genai_types.GenerateContentConfig(
            system_instruction=SYSTEM_PROMPT,
            max_output_tokens=ENHANCER_MAX_TOKENS,
            temperature=ENHANCER_TEMPERATURE,
        )
        response = self.client.models.generate_content(
            model=self.model,
            contents=[
                genai_types.Content(role="user", parts=[genai_types.Part(text=prompt)]),
            ],
            config=config,
        )

        text = ""
        if response.candidates:
            candidate = response.candidates[0]
            if candidate.content and candidate.content.parts:
                text = candidate.content.parts[0].text or ""

        usage = getattr(response, "usage_metadata", None)
        input_tokens = getattr(usage, "prompt_token_count", 0) or 0
        output_tokens = getattr(usage, "candidates_token_count", 0) or 0
        return text, int(input_tokens) + int(output_tokens)

    def enhance(self, patterns: List[DetectedPattern]) -> EnhancementResult:
        """
        Return patterns in their original order, with urgent/high
        descriptions replaced by accepted rewrites.
        """
        targets = [i for i, p in enumerate(patterns) if p.priority in ENHANCED_PRIORITIES]
        if not targets or self.client is None:
            return EnhancementResult(patterns=list(patterns))

        start = time.monotonic()
        try:
            raw_text, tokens = self._call(build_prompt([patterns[i] for i in targets]))
        except Exception as e:
            logger.error(f"[InsightEnhancer] Enhancement failed, keeping original text: {e}")
            return EnhancementResult(patterns=list(patterns), error=str(e))

        rewrites = parse_rewrites(raw_text)
        enhanced = list(patterns)
        count = 0
        for position, index in enumerate(targets):
            if position >= len(rewrites):
                break
            text = rewrites[position]
            if len(text) > MIN_REWRITE_CHARS:
                enhanced[index] = replace(patterns[index], description=text)
                count += 1

        latency_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"[InsightEnhancer] Enhanced {count}/{len(targets)} patterns "
            f"with {self.model} ({tokens} tokens, {latency_ms}ms)"
        )
        return EnhancementResult(
            patterns=enhanced,
            model_used=self.model,
            tokens_used=tokens,
            enhanced_count=count,
        )
