"""Translate a Query into a Qdrant payload filter.

All conditions are conjunctive (``must``). Tenant is always present.
A prefix section filter with several values becomes a nested ``should``
so that any one of the prefixes may match.
"""

from __future__ import annotations

from qdrant_client import models

from groundwork.core.config import VectorDBConfig
from groundwork.core.types import Query, SectionMatchMode, SectionPathFilter


def _match(key: str, value: str) -> models.FieldCondition:
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


def _section_condition(
    section_filter: SectionPathFilter,
    config: VectorDBConfig,
) -> models.FieldCondition | models.Filter:
    if section_filter.mode is SectionMatchMode.ANY:
        return models.FieldCondition(
            key=config.section_path_field,
            match=models.MatchAny(any=list(section_filter.values)),
        )

    clauses = [
        models.FieldCondition(
            key=config.section_path_text_field,
            match=models.MatchText(text=value),
        )
        for value in section_filter.values
    ]
    if len(clauses) == 1:
        return clauses[0]
    return models.Filter(should=clauses)


def build_filter(
    query: Query,
    config: VectorDBConfig | None = None,
    *,
    section_filter: SectionPathFilter | None = None,
) -> models.Filter:
    """Build the payload filter for a query or scroll request.

    Args:
        query: The query whose tenant, document, group and language
            constraints are applied.
        config: Payload field names. Defaults to ``VectorDBConfig()``.
        section_filter: Overrides ``query.section_path`` when given.

    Raises:
        ValueError: If the query has no tenant.
    """
    config = config or VectorDBConfig()
    if not query.tenant_id:
        raise ValueError("tenant_id is required for every retrieval query")

    must: list[models.FieldCondition | models.Filter] = [
        _match(config.tenant_field, query.tenant_id),
    ]
    if query.doc_id:
        must.append(_match(config.doc_id_field, query.doc_id))
    if query.group_ids:
        must.append(
            models.FieldCondition(
                key=config.acl_field, match=models.MatchAny(any=list(query.group_ids))
            )
        )
    if query.language:
        must.append(_match(config.lang_field, query.language))

    section_filter = section_filter or query.section_path
    if section_filter is not None and section_filter.values:
        must.append(_section_condition(section_filter, config))

    return models.Filter(must=must)


def keyword_filter(
    query: Query,
    terms: list[str],
    config: VectorDBConfig | None = None,
) -> models.Filter:
    """Extend the query filter so a chunk must contain at least one of *terms*."""
    config = config or VectorDBConfig()
    base = build_filter(query, config)
    return models.Filter(
        must=base.must,
        should=[
            models.FieldCondition(key=config.keyword_field, match=models.MatchText(text=term))
            for term in terms
        ],
    )
