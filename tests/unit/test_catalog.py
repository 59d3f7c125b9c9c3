"""Unit tests for the achievement catalog"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from src.exceptions import InvalidRequirementError
from src.gamification.catalog import (
    DEFAULT_CATALOG,
    FINANCIAL_ICON,
    TIME_ICON,
    build_catalog,
    seed_catalog,
)
from src.models.achievement import (
    AchievementCategory,
    AchievementDefinition,
    RequirementSpec,
    RequirementType as T,
)


def _definition(title, requirement):
    return AchievementDefinition(
        title=title,
        description=title,
        icon=FINANCIAL_ICON,
        category=AchievementCategory.FINANCIAL,
        requirement=requirement,
    )


class TestBuildCatalog:

    def test_default_catalog_builds(self):
        catalog = build_catalog()
        keys = [d.canonical_key for d in catalog]

        assert len(catalog) == len(DEFAULT_CATALOG)
        assert len(set(keys)) == len(keys)
        assert "EXPENSE_COUNT_1" in keys
        assert "PERFECT_BALANCE" in keys
        assert "DEADLINE_STREAK_MONTH_100" in keys

    def test_default_catalog_has_translation_keys(self):
        for definition in build_catalog():
            assert definition.translation_key is not None, definition.canonical_key

    def test_icons_match_families(self):
        for definition in DEFAULT_CATALOG:
            if definition.category is AchievementCategory.FINANCIAL:
                assert definition.icon == FINANCIAL_ICON
            else:
                assert definition.icon == TIME_ICON

    def test_duplicate_key_rejected(self):
        definitions = [
            _definition("A", RequirementSpec(requirement_type=T.EXPENSE_COUNT, count=1)),
            _definition("B", RequirementSpec(requirement_type=T.EXPENSE_COUNT, count=1)),
        ]
        with pytest.raises(ValueError):
            build_catalog(definitions)

    def test_unknown_type_rejected(self):
        definitions = [_definition("A", RequirementSpec(requirement_type="EXPENSE_TOTAL", count=1))]
        with pytest.raises(InvalidRequirementError):
            build_catalog(definitions)

    def test_missing_target_rejected(self):
        definitions = [_definition("A", RequirementSpec(requirement_type=T.EXPENSE_STREAK))]
        with pytest.raises(InvalidRequirementError):
            build_catalog(definitions)

    def test_explicit_translation_key_kept(self):
        definition = _definition("A", RequirementSpec(requirement_type=T.EXPENSE_COUNT, count=3))
        definition = definition.model_copy(update={"translation_key": "financial.custom"})
        built = build_catalog([definition])[0]
        assert built.canonical_key == "EXPENSE_COUNT_3"
        assert built.translation_key == "financial.custom"


class TestSeedCatalog:

    @pytest.mark.asyncio
    async def test_seed_inserts_new_definitions(self):
        mock_store = MagicMock()
        mock_store.insert_definition = AsyncMock(return_value=True)

        inserted = await seed_catalog(store=mock_store)

        assert inserted == len(DEFAULT_CATALOG)
        first = mock_store.insert_definition.call_args_list[0][0][0]
        assert first.canonical_key == "EXPENSE_COUNT_1"

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, store):
        first = await seed_catalog(store=store)
        second = await seed_catalog(store=store)

        assert first == len(DEFAULT_CATALOG)
        assert second == 0
        assert len(store.definitions) == len(DEFAULT_CATALOG)

    @pytest.mark.asyncio
    async def test_broken_catalog_is_not_seeded(self):
        mock_store = MagicMock()
        mock_store.insert_definition = AsyncMock(return_value=True)
        definitions = [_definition("A", RequirementSpec(requirement_type="EXPENSE_TOTAL", count=1))]

        with pytest.raises(InvalidRequirementError):
            await seed_catalog(store=mock_store, definitions=definitions)

        mock_store.insert_definition.assert_not_called()
