import random

import pytest

from catalog_scraper.engine.budget import BudgetController, PaginationState, effective_max_requests
from catalog_scraper.errors import BudgetExhausted


def test_effective_max_requests_floor_and_ceiling():
    assert effective_max_requests(20) == 40
    assert effective_max_requests(20, 10) == 40
    assert effective_max_requests(20, 500) == 500
    assert effective_max_requests(5000, None) == 2000


def test_default_target_and_per_seed_split():
    budget = BudgetController.for_run(["a", "b", "c"], max_products=10)
    assert budget.target == 10
    assert [s.target for s in budget.seeds.values()] == [4, 4, 4]
    assert BudgetController.for_run(["a"]).target == 20


def test_reserve_never_exceeds_seed_or_global_remaining():
    budget = BudgetController.for_run(["a", "b"], max_products=5)
    assert budget.reserve("a", 10) == 3
    assert budget.reserve("a", 1) == 0
    assert budget.reserve("b", 10) == 2
    assert budget.enqueued == 5
    assert budget.target_reached


def test_budget_invariant_under_random_grants():
    rng = random.Random(7)
    for _ in range(50):
        seeds = [f"seed-{i}" for i in range(rng.randint(1, 5))]
        target = rng.randint(1, 40)
        budget = BudgetController.for_run(seeds, max_products=target)
        per_seed_cap = {seed: budget.seeds[seed].target for seed in seeds}
        for _ in range(30):
            seed = rng.choice(seeds)
            budget.reserve(seed, rng.randint(0, 8))
            assert budget.enqueued <= target
            for name in seeds:
                assert budget.seeds[name].enqueued <= per_seed_cap[name]


def test_unknown_seed_shares_whole_target():
    budget = BudgetController.for_run(["a"], max_products=6)
    assert budget.reserve(None, 10) == 6
    assert budget.reserve("a", 1) == 0


def test_charge_request_raises_at_ceiling():
    budget = BudgetController(target=1, max_requests=2)
    budget.charge_request()
    budget.charge_request()
    with pytest.raises(BudgetExhausted):
        budget.charge_request()


def test_pagination_stops_after_three_idle_loads():
    state = PaginationState(max_load_clicks=10)
    state.record_load(5)
    for _ in range(3):
        assert state.should_continue(True, True)
        state.record_load(0)
    assert not state.should_continue(True, True)
    assert "consecutive" in state.stop_reason
    assert state.clicks == 4


def test_pagination_idle_streak_resets_on_new_items():
    state = PaginationState()
    state.record_load(0)
    state.record_load(0)
    state.record_load(2)
    assert state.idle_streak == 0
    assert state.should_continue(True, True)


@pytest.mark.parametrize(
    "wants_more,has_more,clicks,reason",
    [
        (False, True, 0, "target reached"),
        (True, False, 0, "no more pages"),
        (True, True, 10, "load click limit (10) reached"),
    ],
)
def test_pagination_stop_reasons(wants_more, has_more, clicks, reason):
    state = PaginationState(clicks=clicks)
    assert not state.should_continue(wants_more, has_more)
    assert state.stop_reason == reason
