from __future__ import annotations

from dataclasses import dataclass

from db.database import BackendHandle
from db.dialect import BackendKind
from db.migration import MigrationReport
from repositories import (
    AnalysisResultRepository,
    ApiKeyRepository,
    FoodItemRepository,
    MealRepository,
    ReadingRepository,
    UserRepository,
)


@dataclass
class DatabaseContext:
    """The selected backend plus one repository per entity, built once at startup."""

    handle: BackendHandle
    users: UserRepository
    readings: ReadingRepository
    meals: MealRepository
    food_items: FoodItemRepository
    api_keys: ApiKeyRepository
    analysis_results: AnalysisResultRepository
    migration_report: MigrationReport | None = None
    seed_admin: bool = False

    @classmethod
    def create(cls, handle: BackendHandle, *, development: bool = False, **extra) -> "DatabaseContext":
        return cls(
            handle=handle,
            users=UserRepository(handle, development=development),
            readings=ReadingRepository(handle),
            meals=MealRepository(handle),
            food_items=FoodItemRepository(handle),
            api_keys=ApiKeyRepository(handle),
            analysis_results=AnalysisResultRepository(handle),
            **extra,
        )

    @property
    def kind(self) -> BackendKind:
        return self.handle.kind

    def transaction(self):
        return self.handle.transaction()

    def close(self) -> None:
        self.handle.close()
