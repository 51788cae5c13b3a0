import logging
from typing import Optional

from authtokens import User, create_token_service

DEMO_USER = User(id="u1", email="medic@example.org")


class DemoUserDirectory:
    def authenticate(self, email: str, password: str) -> Optional[User]:
        if email == DEMO_USER.email and password == "safePass123":
            return DEMO_USER
        return None

    def get_by_id(self, user_id: str) -> Optional[User]:
        return DEMO_USER if user_id == DEMO_USER.id else None


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    logger = logging.getLogger("auth-service")

    service = create_token_service(
        {
            "AUTHTOKENS_KEY_DIR": "keys",
            "AUTHTOKENS_AUDIENCE": "medic-logger",
            "AUTHTOKENS_DB_PATH": "data/refresh_tokens.db",
        },
        DemoUserDirectory(),
        logger,
    )

    tokens = service.login("medic@example.org", "safePass123")
    print("access:", service.validate(tokens.access_token))

    refreshed = service.refresh(tokens.refresh_token)
    print("refreshed:", service.validate(refreshed.access_token).status)

    print("logout:", service.logout(refreshed.refresh_token))
    print("jwks:", service.public_key_set())


if __name__ == "__main__":
    main()
