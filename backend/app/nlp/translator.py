"""
NLP Intent Extractor
====================

Converts natural language questions into validated query inputs using an LLM.

Related files:
- app/nlp/prompts.py: System prompts
- app/nlp/intent.py: translate_intent (the extractor's output is untrusted)
- app/semantic/query.py: Target shapes (FilterState, QueryArgs, ...)
- app/semantic/executor.py: Runs what comes out of here

Design:
- Temperature=0 for deterministic outputs
- JSON mode for structured responses
- Every response is validated before use: the loose intent through
  translate_intent, transactions arguments through their pydantic models
- Transport / JSON failures raise TranslationError
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from openai import OpenAI
from pydantic import ValidationError

from app.config import get_settings
from app.nlp.intent import translate_intent
from app.nlp.prompts import (
    build_classification_prompt,
    build_intent_system_prompt,
    build_operation_prompt,
)
from app.semantic.query import (
    AggregationArgs,
    ComputationArgs,
    FilterState,
    IntentCategory,
    QueryArgs,
)

logger = logging.getLogger(__name__)

LLM_TIMEOUT_SECONDS = 30

OPERATION_MODELS = {
    IntentCategory.query: QueryArgs,
    IntentCategory.aggregate: AggregationArgs,
    IntentCategory.calculate: ComputationArgs,
}


class TranslationError(Exception):
    """
    Raised when translation fails (LLM error, JSON parse error, etc.).

    Attributes:
        message: Human-readable error description
        question: Original user question
        raw_response: Raw LLM response (if available)
    """
    def __init__(self, message: str, question: str = "", raw_response: str = ""):
        super().__init__(message)
        self.message = message
        self.question = question
        self.raw_response = raw_response


@dataclass
class IntentClassification:
    category: IntentCategory
    confidence: float
    explanation: str = ""


class IntentExtractor:
    """
    Asks the LLM for intents / arguments and validates what it returns.

    Usage:
        extractor = IntentExtractor()
        state, latency = extractor.to_filter_state("Top 10 communes by price per m² in 2023")
        # state: FilterState(level=commune, field="avg_price_m2", year=2023, limit=10, ...)
    """

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None):
        """
        Args:
            client: Optional OpenAI client (for testing/mocking).
                    If None, creates client from settings.
            model: Optional model override (defaults to settings.OPENAI_MODEL)
        """
        settings = get_settings()
        if client is None:
            if not settings.OPENAI_API_KEY:
                raise ValueError(
                    "OPENAI_API_KEY not configured. "
                    "Set it in your .env file or environment."
                )
            client = OpenAI(api_key=settings.OPENAI_API_KEY)
        self.client = client
        self.model = model or settings.OPENAI_MODEL

    def _complete_json(self, system_prompt: str, question: str) -> Dict[str, Any]:
        """One JSON-mode completion; returns the parsed object."""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": question},
        ]
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0,
                response_format={"type": "json_object"},
                timeout=LLM_TIMEOUT_SECONDS,
            )
            raw_response = response.choices[0].message.content
        except Exception as e:
            raise TranslationError(f"OpenAI API call failed: {e}", question=question) from e

        if not raw_response:
            raise TranslationError("LLM returned empty response", question=question, raw_response="")
        try:
            payload = json.loads(raw_response)
        except json.JSONDecodeError as e:
            raise TranslationError(
                f"LLM returned invalid JSON: {e}",
                question=question,
                raw_response=raw_response,
            ) from e
        if not isinstance(payload, dict):
            raise TranslationError(
                "LLM returned a JSON value that is not an object",
                question=question,
                raw_response=raw_response,
            )
        return payload

    def classify(self, question: str) -> IntentClassification:
        """
        Classify a question into an IntentCategory.

        Unrecognized categories degrade to `unknown`; confidence is
        clamped to [0, 1].
        """
        payload = self._complete_json(build_classification_prompt(), question)
        raw_category = payload.get("category")
        try:
            category = IntentCategory(raw_category)
        except ValueError:
            logger.info(f"[TRANSLATOR] Unrecognized category {raw_category!r}, using unknown")
            category = IntentCategory.unknown
        try:
            confidence = min(max(float(payload.get("confidence", 0.0)), 0.0), 1.0)
        except (TypeError, ValueError):
            confidence = 0.0
        classification = IntentClassification(
            category=category,
            confidence=confidence,
            explanation=str(payload.get("explanation", "")),
        )
        logger.info(f"[TRANSLATOR] Classified as {category.value} ({confidence:.2f})")
        return classification

    def extract_intent(self, question: str) -> Dict[str, Any]:
        """Raw loose intent, NOT validated. Use to_filter_state for anything executable."""
        return self._complete_json(build_intent_system_prompt(), question)

    def to_filter_state(self, question: str, log_latency: bool = False) -> Tuple[FilterState, Optional[int]]:
        """
        Translate a question into a canonical FilterState.

        Returns:
            Tuple of (FilterState, latency_ms or None)

        Raises:
            TranslationError: LLM call or JSON parsing failed
            pydantic.ValidationError: Structurally invalid intent
        """
        start_time = time.time() if log_latency else None
        intent = self.extract_intent(question)
        logger.debug(f"[TRANSLATOR] Raw intent: {intent}")
        try:
            state = translate_intent(intent)
        except ValidationError as e:
            logger.warning(f"[TRANSLATOR] Rejected intent: {summarize_errors(e)}")
            raise
        latency = int((time.time() - start_time) * 1000) if start_time else None
        return state, latency

    def to_operation_args(
        self,
        question: str,
        category: Union[IntentCategory, str],
    ) -> Union[QueryArgs, AggregationArgs, ComputationArgs]:
        """
        Ask for transactions arguments of one category and validate them.

        Raises:
            TranslationError: Unsupported category, LLM failure, or arguments
                              that do not match the category's shape
        """
        category = IntentCategory(category)
        model = OPERATION_MODELS.get(category)
        if model is None:
            raise TranslationError(
                f"Category {category.value!r} has no executable arguments",
                question=question,
            )
        payload = self._complete_json(build_operation_prompt(category), question)
        try:
            args = model.model_validate(payload)
        except ValidationError as e:
            raise TranslationError(
                f"LLM arguments do not match {model.__name__}: {e.error_count()} error(s)",
                question=question,
                raw_response=json.dumps(payload),
            ) from e
        logger.info(f"[TRANSLATOR] {category.value} arguments validated")
        return args


def summarize_errors(error: ValidationError) -> List[str]:
    """Compact `loc: msg` lines for logging a rejected intent."""
    return [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors()]
