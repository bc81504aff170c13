from __future__ import annotations

from decimal import Decimal
from typing import Sequence

import tiktoken

from fineflow_budget.domain.budget import OperationConfig, OperationType

# USD per million input tokens; should be kept in sync with provider pricing.
EMBEDDING_COSTS_PER_MILLION: dict[str, Decimal] = {
    "text-embedding-3-large": Decimal("0.13"),
    "text-embedding-3-small": Decimal("0.02"),
    "text-embedding-ada-002": Decimal("0.10"),
}

EMBEDDING_QUALITY: dict[str, float] = {
    "text-embedding-3-large": 1.0,
    "text-embedding-3-small": 0.85,
    "text-embedding-ada-002": 0.80,
}

AVG_TOKENS_PER_QUERY = 50

_FALLBACK_COST_PER_MILLION = Decimal("0.02")
_MILLION = Decimal(1_000_000)

_ENCODING_CACHE: dict[str, tiktoken.Encoding] = {}


def _encoding_for_model(model: str) -> tiktoken.Encoding:
    if model in _ENCODING_CACHE:
        return _ENCODING_CACHE[model]
    try:
        encoding = tiktoken.encoding_for_model(model)
    except KeyError:
        encoding = tiktoken.get_encoding("cl100k_base")
    _ENCODING_CACHE[model] = encoding
    return encoding


def count_tokens(model: str, texts: Sequence[str]) -> int:
    """Count tokens of ``texts`` with the tokenizer used by ``model``."""

    encoding = _encoding_for_model(model)
    return sum(len(encoding.encode(text)) for text in texts)


def estimate_operation_cost(
    operation_type: OperationType | str,
    config: OperationConfig | None = None,
    sample_texts: Sequence[str] | None = None,
) -> Decimal:
    """Estimate the USD cost of an operation before it runs.

    A single query costs ``tokens_per_query`` embedding tokens; evaluations and
    experiment runs issue ``num_queries`` queries, optimizations repeat them per
    experiment. When ``sample_texts`` are supplied their mean token count
    replaces the default of 50 tokens per query.
    """

    operation_type = OperationType(operation_type)
    config = config or OperationConfig()

    cost_per_million = EMBEDDING_COSTS_PER_MILLION.get(
        config.embedding_model, _FALLBACK_COST_PER_MILLION
    )

    tokens_per_query = Decimal(AVG_TOKENS_PER_QUERY)
    if sample_texts:
        total = count_tokens(config.embedding_model, sample_texts)
        tokens_per_query = Decimal(total) / len(sample_texts)

    cost_per_query = tokens_per_query / _MILLION * cost_per_million

    if operation_type is OperationType.QUERY:
        return cost_per_query
    if operation_type is OperationType.OPTIMIZATION:
        return cost_per_query * config.num_queries * config.num_experiments
    return cost_per_query * config.num_queries
