# priorities/engine/estimator.py
"""
Impact Estimators
=================

Pluggable collaborators that estimate how much a task advances an outcome.

Contract:
---------
    await estimator.estimate(task, outcome_text) -> ImpactEstimate | None

- Returning an ImpactEstimate means the estimate is usable.
- Returning None means "no estimate available" (for instance the estimator is
  not configured); the Scoring Service then applies the keyword heuristic.
- Raising EstimationFailure means the call itself failed; the task is routed
  to the Retry Queue and the heuristic is NOT applied.

Implementations:
----------------
- OpenAIImpactEstimator: Chat Completions in JSON mode via AsyncOpenAI.
- HeuristicImpactEstimator: deterministic keyword rules, always available.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Pattern, Tuple

from django.conf import settings
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
)

from .contracts import ImpactEstimate, Task
from .exceptions import EstimationFailure, ValidationError
from .heuristics import clamp

logger = logging.getLogger(__name__)


class ImpactEstimator:
    """Base contract for impact estimators."""

    is_configured: bool = True

    async def estimate(self, task: Task, outcome_text: Optional[str]) -> Optional[ImpactEstimate]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Keyword heuristic
# ---------------------------------------------------------------------------


class HeuristicImpactEstimator(ImpactEstimator):
    """
    Conservative keyword rules used when no model estimate is available.

    Starts from a neutral impact of 5 and applies additive modifiers for
    strategic keywords found in the task text and the outcome text.
    """

    BASE_IMPACT: float = 5.0

    KEYWORD_WEIGHTS: List[Tuple[Pattern[str], float]] = [
        (re.compile(r"(revenue|conversion|payment)", re.IGNORECASE), 3.0),
        (re.compile(r"(launch|test)", re.IGNORECASE), 2.0),
        (re.compile(r"(document|cleanup|clean up|refactor)", re.IGNORECASE), -1.0),
    ]

    async def estimate(self, task: Task, outcome_text: Optional[str]) -> ImpactEstimate:
        return self.estimate_sync(task, outcome_text)

    def estimate_sync(self, task: Task, outcome_text: Optional[str]) -> ImpactEstimate:
        content = f"{task.text or ''} {outcome_text or ''}".lower()
        impact = self.BASE_IMPACT
        matched: List[str] = []

        for pattern, weight in self.KEYWORD_WEIGHTS:
            match = pattern.search(content)
            if match:
                impact += weight
                keyword = match.group(0).lower()
                if keyword not in matched:
                    matched.append(keyword)

        impact = clamp(impact, 0.0, 10.0)

        boost = max(0.0, len(matched) * 0.05 - (0.05 if impact < self.BASE_IMPACT else 0.0))
        confidence = clamp(0.6 + boost, 0.4, 0.95)
        reasoning = (
            f"Detected strategic keywords: {', '.join(matched)}"
            if matched
            else "Default impact estimate based on task context."
        )

        return ImpactEstimate(
            impact=impact,
            reasoning=reasoning,
            keywords=tuple(matched),
            confidence=round(confidence, 3),
        )


# ---------------------------------------------------------------------------
# OpenAI estimator
# ---------------------------------------------------------------------------


class OpenAIImpactEstimator(ImpactEstimator):
    """
    Estimates strategic impact with the OpenAI Chat Completions API.

    The class uses DEFERRED INITIALIZATION - it will not raise errors during
    __init__ if the API key is missing. Instead, it tracks its availability
    state and estimate() returns None so the caller falls back to heuristics.

    Attributes:
        client (AsyncOpenAI | None): Initialized client, or None if unavailable.
        model (str): The OpenAI model to use.
        is_configured (bool): Whether the estimator is ready for use.
        configuration_error (str | None): Description of configuration issue, if any.
    """

    DEFAULT_MODEL: str = "gpt-4o-mini"

    DEFAULT_TEMPERATURE: float = 0.0
    DEFAULT_MAX_TOKENS: int = 300
    DEFAULT_TIMEOUT: float = 10.0  # Seconds

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        **client_kwargs: Any,
    ) -> None:
        self.model: str = model or getattr(settings, "STRATEGIC_SCORING_MODEL", None) or self.DEFAULT_MODEL
        self.timeout: float = timeout or getattr(
            settings, "STRATEGIC_SCORING_TIMEOUT", self.DEFAULT_TIMEOUT
        )
        self._client_kwargs: Dict[str, Any] = client_kwargs

        self.client: Optional[AsyncOpenAI] = None
        self.is_configured: bool = False
        self.configuration_error: Optional[str] = None

        self._configure(api_key)

    def _configure(self, api_key: Optional[str] = None) -> None:
        resolved_key = api_key or getattr(settings, "OPENAI_API_KEY", None) or ""
        if not resolved_key:
            self.configuration_error = (
                "OPENAI_API_KEY is not configured. "
                "Set the OPENAI_API_KEY environment variable or Django setting."
            )
            logger.warning(f"OpenAIImpactEstimator: {self.configuration_error}")
            return

        try:
            # Retries are owned by the RetryQueue, not the SDK
            self.client = AsyncOpenAI(api_key=resolved_key, max_retries=0, **self._client_kwargs)
            self.is_configured = True
            self.configuration_error = None
            logger.info(f"OpenAIImpactEstimator initialized with model={self.model}")
        except Exception as e:
            self.configuration_error = f"Failed to initialize OpenAI client: {str(e)}"
            logger.error(f"OpenAIImpactEstimator: {self.configuration_error}")
            self.client = None
            self.is_configured = False

    async def estimate(self, task: Task, outcome_text: Optional[str]) -> Optional[ImpactEstimate]:
        if not self.is_configured or self.client is None:
            logger.debug(
                f"OpenAIImpactEstimator not configured ({self.configuration_error}); "
                f"deferring task {task.task_id} to heuristics"
            )
            return None

        messages = self._build_messages(task, outcome_text)

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.DEFAULT_TEMPERATURE,
                max_tokens=self.DEFAULT_MAX_TOKENS,
                response_format={"type": "json_object"},
                timeout=self.timeout,
            )
            raw_content: str = response.choices[0].message.content or ""
            logger.debug(f"OpenAIImpactEstimator: Raw response: {raw_content[:200]}...")
            result = self._validate_and_parse_response(raw_content)

        except AuthenticationError as e:
            logger.error(f"OpenAI authentication failed: {e}")
            raise EstimationFailure("Invalid API key or authentication failed", "AUTH_ERROR") from e

        except RateLimitError as e:
            logger.warning(f"OpenAI rate limit exceeded: {e}")
            raise EstimationFailure("API rate limit exceeded", "RATE_LIMIT") from e

        except APITimeoutError as e:
            logger.warning(f"OpenAI API timeout: {e}")
            raise EstimationFailure("API request timed out", "TIMEOUT") from e

        except APIConnectionError as e:
            logger.error(f"OpenAI connection error: {e}")
            raise EstimationFailure("Could not connect to OpenAI API", "CONNECTION_ERROR") from e

        except BadRequestError as e:
            logger.error(f"OpenAI bad request: {e}")
            raise EstimationFailure("Invalid request to OpenAI API", "BAD_REQUEST") from e

        except APIStatusError as e:
            logger.error(f"OpenAI API status error: {e.status_code} - {e}")
            raise EstimationFailure(
                f"OpenAI API error (status {e.status_code})", f"API_ERROR_{e.status_code}"
            ) from e

        except json.JSONDecodeError as e:
            logger.error(f"Failed to decode impact estimate as JSON: {e}")
            raise EstimationFailure("AI returned invalid JSON response", "JSON_PARSE_ERROR") from e

        except (ValueError, ValidationError) as e:
            logger.error(f"Impact estimate validation failed: {e}")
            raise EstimationFailure(str(e), "VALIDATION_ERROR") from e

        logger.info(
            f"OpenAIImpactEstimator: Estimated task {task.task_id} "
            f"(impact={result.impact:.1f}, confidence={result.confidence:.2f})"
        )
        return result

    def _build_messages(self, task: Task, outcome_text: Optional[str]) -> List[Dict[str, str]]:
        json_structure_example = json.dumps(
            {
                "impact": 7,
                "reasoning": "Short sentence.",
                "keywords": ["payment", "launch"],
                "confidence": 0.8,
            }
        )

        system_prompt = (
            "You are an expert product strategist estimating strategic impact for tasks.\n\n"
            "RULES:\n"
            "1. Impact (0-10) reflects how much the task advances the stated outcome.\n"
            "2. Confidence (0-1) reflects clarity of the task and its linkage to the outcome.\n"
            "3. Keywords are 2-4 lowercase nouns or verbs from the task description.\n"
            "4. Return ONLY valid JSON. No markdown, no commentary.\n"
            f"5. The output must strictly follow this schema: {json_structure_example}"
        )

        user_content = (
            f"Outcome context: {outcome_text or 'General productivity improvements'}\n\n"
            f"Task: {task.text or 'No description provided'}"
        )

        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]

    def _validate_and_parse_response(self, raw_json: str) -> ImpactEstimate:
        """
        Parses the JSON payload into an ImpactEstimate.

        Impact and confidence are clamped to their ranges; keywords are
        normalized to lowercase strings.

        Raises:
            ValueError: If the response is empty or missing required keys.
            json.JSONDecodeError: If the payload is not JSON.
        """
        if not raw_json:
            raise ValueError("Empty response from AI")

        data = json.loads(raw_json)

        if not isinstance(data, dict) or "impact" not in data:
            raise ValueError("Missing required key 'impact' in JSON response")

        try:
            raw_impact = float(data["impact"])
        except (ValueError, TypeError):
            raise ValueError(f"Non-numeric impact in JSON response: {data['impact']!r}")
        if not math.isfinite(raw_impact):
            raise ValueError(f"Non-finite impact in JSON response: {data['impact']!r}")
        impact = clamp(raw_impact, 0.0, 10.0)

        try:
            raw_confidence = float(data.get("confidence", 0.0))
        except (ValueError, TypeError):
            raw_confidence = 0.0
        confidence = clamp(raw_confidence, 0.0, 1.0) if math.isfinite(raw_confidence) else 0.0

        raw_keywords = data.get("keywords")
        if not isinstance(raw_keywords, list):
            raw_keywords = []
        keywords = tuple(
            str(keyword).strip().lower() for keyword in raw_keywords if str(keyword).strip()
        )[:10]

        return ImpactEstimate(
            impact=impact,
            reasoning=str(data.get("reasoning") or "No reasoning provided."),
            keywords=keywords,
            confidence=confidence,
        )

    def health_check(self) -> Dict[str, Any]:
        return {
            "is_configured": self.is_configured,
            "model": self.model,
            "timeout": self.timeout,
            "configuration_error": self.configuration_error,
        }
