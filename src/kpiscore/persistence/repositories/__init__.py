"""Persistence repositories for kpiscore.

Organization-scoped data access with Postgres persistence and an in-memory
fallback for development/testing.
"""

from kpiscore.persistence.repositories.indicators import (
    IndicatorsRepository,
    InMemoryIndicatorsRepository,
    get_indicators_repository,
    seed_indicator_in_memory,
)
from kpiscore.persistence.repositories.indicators import (
    clear_in_memory_store as clear_indicators_in_memory_store,
)
from kpiscore.persistence.repositories.scores import (
    InMemoryScoresRepository,
    ScoresRepository,
    get_scores_repository,
    newest_first,
    seed_score_in_memory,
)
from kpiscore.persistence.repositories.scores import (
    clear_in_memory_store as clear_scores_in_memory_store,
)
from kpiscore.persistence.repositories.subjects import (
    InMemorySubjectsRepository,
    SubjectsRepository,
    get_subjects_repository,
    seed_subject_in_memory,
)
from kpiscore.persistence.repositories.subjects import (
    clear_in_memory_store as clear_subjects_in_memory_store,
)


def clear_all_in_memory_stores() -> None:
    """Clear every in-memory store. For testing only."""
    clear_indicators_in_memory_store()
    clear_scores_in_memory_store()
    clear_subjects_in_memory_store()


__all__ = [
    "IndicatorsRepository",
    "InMemoryIndicatorsRepository",
    "InMemoryScoresRepository",
    "InMemorySubjectsRepository",
    "ScoresRepository",
    "SubjectsRepository",
    "clear_all_in_memory_stores",
    "clear_indicators_in_memory_store",
    "clear_scores_in_memory_store",
    "clear_subjects_in_memory_store",
    "get_indicators_repository",
    "get_scores_repository",
    "get_subjects_repository",
    "newest_first",
    "seed_indicator_in_memory",
    "seed_score_in_memory",
    "seed_subject_in_memory",
]
