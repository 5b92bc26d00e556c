# app/api/dependencies/ingestion.py
from functools import lru_cache

from fastapi import Depends

from app.core.config import get_settings
from app.services.attention_ingestion import AttentionIngestionService, IngestionStateTable
from app.services.backpressure import BackpressureGuard, MemorySampler


@lru_cache()
def get_memory_sampler() -> MemorySampler:
    """
    Process-wide memory sampler. Override in tests to simulate memory pressure.
    """
    return MemorySampler()


@lru_cache()
def get_ingestion_state() -> IngestionStateTable:
    """
    Process-wide ingestion side state (last known states per meeting).
    """
    return IngestionStateTable(max_meetings=get_settings().INGESTION_STATE_MAX_MEETINGS)


def get_backpressure_guard(
    sampler: MemorySampler = Depends(get_memory_sampler),
) -> BackpressureGuard:
    return BackpressureGuard(sampler, limit_mb=get_settings().BACKPRESSURE_HEAP_LIMIT_MB)


def get_ingestion_service(
    guard: BackpressureGuard = Depends(get_backpressure_guard),
    state_table: IngestionStateTable = Depends(get_ingestion_state),
) -> AttentionIngestionService:
    return AttentionIngestionService(guard=guard, state_table=state_table, settings=get_settings())
