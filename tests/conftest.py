import logging
from typing import Dict, Optional, Tuple

import pytest

from authtokens import (
    InMemoryRefreshTokenStore,
    KeyStore,
    TokenConfig,
    TokenService,
    User,
    load_token_config_from_dict,
)


class FakeUserDirectory:
    def __init__(self, users: Dict[str, Tuple[User, str]]) -> None:
        self._by_email = users
        self._by_id = {user.id: user for user, _ in users.values()}

    def authenticate(self, email: str, password: str) -> Optional[User]:
        entry = self._by_email.get(email)
        if entry is None or entry[1] != password:
            return None
        return entry[0]

    def get_by_id(self, user_id: str) -> Optional[User]:
        return self._by_id.get(user_id)


@pytest.fixture()
def logger() -> logging.Logger:
    logger = logging.getLogger("authtokens-tests")
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return logger


@pytest.fixture()
def key_dir(tmp_path) -> str:
    return str(tmp_path / "keys")


@pytest.fixture()
def config(key_dir) -> TokenConfig:
    return load_token_config_from_dict(
        {
            "AUTHTOKENS_KEY_DIR": key_dir,
            "AUTHTOKENS_AUDIENCE": "medic-logger",
        }
    )


@pytest.fixture()
def key_store(key_dir, logger) -> KeyStore:
    store = KeyStore(key_dir, logger)
    store.initialize()
    return store


@pytest.fixture()
def users() -> FakeUserDirectory:
    return FakeUserDirectory(
        {
            "user@example.org": (User(id="u1", email="user@example.org"), "pw123"),
            "other@example.org": (User(id="u2", email="other@example.org"), "secret"),
        }
    )


@pytest.fixture()
def refresh_store() -> InMemoryRefreshTokenStore:
    return InMemoryRefreshTokenStore()


@pytest.fixture()
def service(config, logger, key_store, refresh_store, users) -> TokenService:
    return TokenService(config, logger, key_store, refresh_store, users)
