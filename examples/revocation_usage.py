import logging

from authtokens import (
    InMemoryRefreshTokenStore,
    InvalidRefreshToken,
    KeyStore,
    TokenConfig,
    TokenService,
    User,
)


class SingleUserDirectory:
    def __init__(self, user: User, password: str) -> None:
        self._user = user
        self._password = password

    def authenticate(self, email, password):
        if email == self._user.email and password == self._password:
            return self._user
        return None

    def get_by_id(self, user_id):
        return self._user if user_id == self._user.id else None


def main() -> None:
    logger = logging.getLogger("auth-service")
    config = TokenConfig(key_dir="keys", audience="medic-logger", revoke_family_on_reuse=True)
    service = TokenService(
        config,
        logger,
        KeyStore(config.key_dir, logger),
        InMemoryRefreshTokenStore(),
        SingleUserDirectory(User(id="u1", email="user@example.org"), "pw123"),
    )

    laptop = service.login("user@example.org", "pw123")
    phone = service.login("user@example.org", "pw123")

    rotated = service.refresh(laptop.refresh_token)
    try:
        service.refresh(laptop.refresh_token)
    except InvalidRefreshToken:
        print("Replay rejected; remaining sessions revoked")

    try:
        service.refresh(rotated.refresh_token)
    except InvalidRefreshToken:
        print("Rotated session also revoked")

    result = service.logout(all_sessions=True, access_token=phone.access_token)
    print("Logout everywhere revoked:", result.revoked)


if __name__ == "__main__":
    main()
