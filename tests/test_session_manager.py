import asyncio

import pytest

from catalog_scraper.antibot.behavior import BehaviorPresets, HumanBehavior
from catalog_scraper.antibot.captcha import CaptchaSettings
from catalog_scraper.antibot.storage import SessionStore
from catalog_scraper.engine.session import SessionManager
from catalog_scraper.errors import AuthError
from catalog_scraper.models import Credentials
from tests.fakes import FakeAdapter, FakeLoginAdapter, FakePage, FakeShop, no_sleep


def _manager(tmp_path, shop, *, credentials=True, adapter=None):
    return SessionManager(
        adapter or FakeLoginAdapter(shop),
        SessionStore(tmp_path),
        Credentials(username="Buyer@Example.com", password="secret") if credentials else None,
        behavior=HumanBehavior(BehaviorPresets.off(), sleep=no_sleep),
        captcha=CaptchaSettings(),
    )


def test_public_sites_are_always_ready(tmp_path):
    shop = FakeShop()
    manager = _manager(tmp_path, shop, credentials=False, adapter=FakeAdapter(shop))
    assert manager.gate.is_set()
    assert manager.restore() is None
    assert asyncio.run(manager.has_valid_session(FakePage(shop)))


def test_probe_without_saved_state_does_not_navigate(tmp_path):
    shop = FakeShop(session_valid=True)
    manager = _manager(tmp_path, shop)
    assert not asyncio.run(manager.has_valid_session(FakePage(shop)))
    assert shop.visits == []
    assert not manager.gate.is_set()


def test_login_persists_state_before_opening_the_gate(tmp_path):
    shop = FakeShop()
    manager = _manager(tmp_path, shop)
    state = asyncio.run(manager.login(FakePage(shop)))

    assert state.owner_identity == "buyer@example.com"
    assert manager.gate.is_set()
    assert manager.restore()["cookies"][0]["name"] == "sid"
    assert manager.logins == 1


def test_valid_saved_session_is_reused(tmp_path):
    shop = FakeShop(session_valid=True)
    manager = _manager(tmp_path, shop)
    manager.store.save("fake-login", "buyer@example.com", {"cookies": []})
    assert asyncio.run(manager.has_valid_session(FakePage(shop)))
    assert manager.gate.is_set()
    assert shop.logins == 0


def test_failed_probe_deletes_saved_state(tmp_path):
    shop = FakeShop(session_valid=False)
    manager = _manager(tmp_path, shop)
    manager.store.save("fake-login", "buyer@example.com", {"cookies": []})
    assert not asyncio.run(manager.has_valid_session(FakePage(shop)))
    assert manager.store.load("fake-login", "buyer@example.com") is None


def test_concurrent_probes_share_one_navigation(tmp_path):
    shop = FakeShop(session_valid=True)
    manager = _manager(tmp_path, shop)
    manager.store.save("fake-login", "buyer@example.com", {"cookies": []})

    async def scenario():
        return await asyncio.gather(*(manager.has_valid_session(FakePage(shop)) for _ in range(5)))

    assert asyncio.run(scenario()) == [True] * 5
    assert shop.visits.count(FakeLoginAdapter.session_probe_url) == 1


def test_login_without_credentials_is_an_auth_error(tmp_path):
    shop = FakeShop()
    manager = _manager(tmp_path, shop, credentials=False)
    with pytest.raises(AuthError):
        asyncio.run(manager.login(FakePage(shop)))


def test_rejected_login_keeps_gate_closed(tmp_path):
    shop = FakeShop(reject_login=True)
    manager = _manager(tmp_path, shop)
    with pytest.raises(AuthError):
        asyncio.run(manager.login(FakePage(shop)))
    assert not manager.gate.is_set()
    assert manager.restore() is None


def test_invalidate_is_idempotent(tmp_path):
    shop = FakeShop()
    manager = _manager(tmp_path, shop)
    asyncio.run(manager.login(FakePage(shop)))

    assert asyncio.run(manager.invalidate())
    assert not asyncio.run(manager.invalidate())
    assert not manager.gate.is_set()
    assert manager.restore() is None
