from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timezone

import pytest

from trackwell.core.config import Settings, get_settings
from trackwell.crm.schemas import DirectoryUser
from trackwell.crm.service import TrackerCore
from trackwell.directory import InMemoryUserDirectory
from trackwell.platform.security import ActorContext, Role, RoleMatrixPolicy, set_policy_backend
from tests.support import FrozenClock


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    set_policy_backend(RoleMatrixPolicy())


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def admin() -> ActorContext:
    return ActorContext(user_id="u-admin", name="Ada Admin", role=Role.ADMIN, email="ada@acme.io")


@pytest.fixture()
def manager() -> ActorContext:
    return ActorContext(user_id="u-manager", name="Max Manager", role=Role.MANAGER, email="max@acme.io")


@pytest.fixture()
def alice() -> ActorContext:
    return ActorContext(user_id="u-alice", name="Alice Sales", role=Role.SALES_REP, email="alice@acme.io")


@pytest.fixture()
def bob() -> ActorContext:
    return ActorContext(user_id="u-bob", name="Bob Rep", role=Role.SALES_REP, email="bob@acme.io")


@pytest.fixture()
def directory(
    admin: ActorContext,
    manager: ActorContext,
    alice: ActorContext,
    bob: ActorContext,
) -> InMemoryUserDirectory:
    return InMemoryUserDirectory(
        DirectoryUser(id=actor.user_id, name=actor.name, email=actor.email, role=actor.role)
        for actor in (admin, manager, alice, bob)
    )


@pytest.fixture()
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture()
def core(directory: InMemoryUserDirectory, settings: Settings, clock: FrozenClock) -> TrackerCore:
    return TrackerCore(directory, settings=settings, clock=clock)
