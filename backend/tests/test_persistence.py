from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest
from sqlalchemy import insert

from finstat.errors import ConflictError
from finstat.persistence import CATEGORY_TAKEN, InMemoryPersistence, SqlPersistence, categories_table
from finstat.services.taxonomy import DEFAULT_TAXONOMY, seed_taxonomy


@pytest.fixture(params=["memory", "sql"])
def persistence(request, tmp_path):
    if request.param == "sql":
        return SqlPersistence(f"sqlite:///{tmp_path / 'persistence.db'}")
    return InMemoryPersistence()


def test_seed_is_idempotent(persistence) -> None:
    first = seed_taxonomy(persistence, DEFAULT_TAXONOMY)
    assert first == {"categories": 7, "subcategories": 54}
    second = seed_taxonomy(persistence, DEFAULT_TAXONOMY)
    assert second == {"categories": 0, "subcategories": 0}
    assert len(persistence.list_categories()) == 7


def test_seed_keeps_existing_rows(persistence) -> None:
    existing = persistence.create_category("Income")
    persistence.create_subcategory("Salary", existing["id"])
    counts = seed_taxonomy(persistence, DEFAULT_TAXONOMY)
    assert counts == {"categories": 6, "subcategories": 53}
    income = next(c for c in persistence.list_categories() if c["name"] == "Income")
    assert income["id"] == existing["id"]
    assert income["subcategories"][0]["name"] == "Salary"


def test_concurrent_category_creation_has_one_winner(persistence) -> None:
    barrier = Barrier(8)

    def attempt() -> str:
        barrier.wait()
        try:
            persistence.create_category("Food")
            return "created"
        except ConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(lambda _: attempt(), range(8)))

    assert outcomes.count("created") == 1
    assert outcomes.count("conflict") == 7
    assert [c["name"] for c in persistence.list_categories()] == ["Food"]


def test_get_or_create_category_returns_same_shape(persistence) -> None:
    created, was_created = persistence.get_or_create_category("Food")
    assert was_created is True
    assert created["subcategories"] == []

    bread = persistence.create_subcategory("Bread", created["id"])
    existing, was_created = persistence.get_or_create_category("Food")
    assert was_created is False
    assert set(existing) == set(created)
    assert existing["id"] == created["id"]
    assert [s["id"] for s in existing["subcategories"]] == [bread["id"]]


def test_sql_unique_constraint_maps_to_conflict(tmp_path) -> None:
    persistence = SqlPersistence(f"sqlite:///{tmp_path / 'unique.db'}")
    persistence.create_category("Food")
    with pytest.raises(ConflictError) as exc:
        with persistence._begin(conflict=CATEGORY_TAKEN) as conn:
            conn.execute(insert(categories_table).values(name="Food"))
    assert exc.value.message == CATEGORY_TAKEN
    assert [c["name"] for c in persistence.list_categories()] == ["Food"]
