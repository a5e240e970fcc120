"""
Prompt Engineering Module
==========================

System prompts for the LLM-based intent extractor.

Related files:
- app/nlp/translator.py: Uses these prompts
- app/nlp/intent.py: Normalizes what the intent prompt produces
- app/semantic/model.py: Vocabularies embedded in the prompts

Design principles:
- Keep prompts in code (not external files) for versioning
- Vocabularies are rendered from the catalog, never duplicated by hand
- The model is asked for JSON only (JSON mode, temperature=0)
"""

from __future__ import annotations

import json
from typing import Iterable, Union

from app.semantic.model import (
    DIMENSIONS,
    FEATURE_YEARS,
    METRIC_FIELDS,
    MONTHS,
)
from app.semantic.query import IntentCategory
from app.semantic.registry import TRANSACTION_FIELDS

NUMERIC_FILTER_OPERATIONS = ("gte", "lte", "between")
PROPERTY_TYPES = ("apartment", "house")

# Examples of the loose intent shape, one per common phrasing
INTENT_EXAMPLES = [
    {
        "question": "Show me the top 10 communes by average price per square meter in 2024.",
        "intent": {"primaryDimension": "inseeCode", "metric": "avg_price_m2", "year": 2024, "limit": 10, "sortOrder": "desc"},
    },
    {
        "question": "Filter apartments sold in INSEE 75117 with at least 50 sales last year.",
        "intent": {"inseeCodes": ["75117"], "propertyType": "apartment", "year": FEATURE_YEARS[-1], "minSales": 50},
    },
    {
        "question": "Show me sections 75112000BZ and 75107000AY with average price above 5000 per m².",
        "intent": {"sections": ["75112000BZ", "75107000AY"], "filters": {"avg_price_m2": {"operation": "gte", "value": 5000}}},
    },
    {
        "question": "Compare Paris (75101) and Lyon (69123) by total sales in 2023.",
        "intent": {"inseeCodes": ["75101", "69123"], "primaryDimension": "inseeCode", "metric": "total_sales", "year": 2023},
    },
]


def _format_list(values: Iterable[Union[str, int]]) -> str:
    return ", ".join(f'"{v}"' if isinstance(v, str) else str(v) for v in values)


def build_intent_system_prompt() -> str:
    """
    Build the system prompt for loose intent extraction.

    The output of this prompt is untrusted: it always goes through
    app.nlp.intent.translate_intent before use.
    """
    metrics = _format_list(METRIC_FIELDS)
    examples = "\n\n".join(
        f'User: "{example["question"]}"\n{json.dumps(example["intent"], ensure_ascii=False)}'
        for example in INTENT_EXAMPLES
    )
    return f"""
You translate natural language about French property sales into structured JSON.

Key principles:
- Dimension filtering (location, time): use "inseeCodes", "sections", "year", "month", "primaryDimension" and "propertyType" directly.
- Numerical filtering (metrics): use the "filters" object keyed by metric field name.

Rules:
- Omit optional fields when the user does not imply them.
- "primaryDimension": {_format_list(DIMENSIONS)}. Set when grouping by that dimension (e.g. "by commune", "by year").
- "metric": {metrics}. Set when the user names a metric to inspect or order by.
- "propertyType": {_format_list(PROPERTY_TYPES)}. Map plural phrases like "apartments" to "apartment".
- "inseeCodes": array of 5-digit INSEE codes as strings (e.g. "75112").
- "sections": array of 10-character section identifiers (e.g. "75112000BZ").
- "year": integer from {FEATURE_YEARS[0]} to {FEATURE_YEARS[-1]}. Omit if invalid or unspecified.
- "month": integer from {MONTHS[0]} to {MONTHS[-1]}. Omit if invalid or unspecified.
- "filters": object keyed by metric field ({metrics}); each value has
  "operation" ({_format_list(NUMERIC_FILTER_OPERATIONS)}) and "value" (number, or [low, high] for "between").
- "minSales": integer >= 0, minimum number of transactions.
- "limit": integer between 1 and 500, for explicit limits like "top 10".
- "sortOrder": "asc" or "desc". Use "desc" for highest/top, "asc" for lowest/bottom.
- Do not invent geographic codes; omit location fields if uncertain.

Return ONLY a JSON object.

Examples:
{examples}
""".strip()


def build_classification_prompt() -> str:
    """System prompt asking for `{category, confidence, explanation}` only."""
    categories = " | ".join(c.value for c in IntentCategory)
    return f"""
You are a data assistant. Your task is ONLY to classify the user's request, NOT to run any data operation.

Classify the request into one of: {categories}.

Guidance:
- List, filter or retrieve rows/columns: "query".
- Group, count, average, sum, min/max over groups or time: "aggregate".
- A derived figure (percentile, price per m²) without retrieval details: "calculate".
- Questions about the table or its fields: "schema".
- Interpretation or trend explanations: "explain".
- Comparing two sets or time periods conceptually: "compare".
- Unclear or out of scope: "unknown".

Return ONLY a JSON object:
{{"category": "{categories}", "confidence": 0..1, "explanation": "brief rationale"}}
""".strip()


def build_operation_prompt(category: IntentCategory) -> str:
    """
    System prompt asking for transactions arguments of one category.

    query     -> {select?, filters?, sort?, limit?, offset?}
    aggregate -> {groupBy?, metrics, filters?, sort?, limit?}
    calculate -> {groupBy?, computations, filters?, sort?, limit?}
    """
    fields = _format_list(TRANSACTION_FIELDS)
    groupable = _format_list(name for name, (_, _, groupable) in TRANSACTION_FIELDS.items() if groupable)
    shapes = {
        IntentCategory.query: '{"select": [field], "filters": [...], "sort": [...], "limit": n, "offset": n}',
        IntentCategory.aggregate: (
            '{"groupBy": [field], "metrics": [{"metric": "count|sum|avg|min|max", "field": field}], '
            '"filters": [...], "sort": [...], "limit": n}'
        ),
        IntentCategory.calculate: (
            '{"groupBy": [field], "computations": [{"name": "percentile", "field": field, "p": 0..100} '
            '| {"name": "avgPricePerM2"}], "filters": [...], "sort": [...], "limit": n}'
        ),
    }
    return f"""
You convert the user's request into arguments for ONE read-only query over the property_sales table.

Rules:
- Use ONLY these fields: {fields}. Do not invent columns or aliases.
- Group only by: {groupable}.
- A filter is {{"field": field, "operator": "=|!=|>|>=|<|<=|between|in|ilike|is_null", "value": ...}};
  "between" takes [low, high], "in" a non-empty array, "is_null" a boolean.
- A sort entry is {{"field": field or produced label, "direction": "asc|desc"}}; omit sort if not specified.
- Geography: "primaryInseeCode" / "primarySection". Time: "year" / "month".
- Omit anything the user does not imply.

Return ONLY a JSON object shaped as:
{shapes[category]}
""".strip()
