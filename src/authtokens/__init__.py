"""Core package for access/refresh token issuance, rotation and revocation."""

from authtokens.codec import AccessTokenClaims, TokenCodec
from authtokens.core import (
    LoginResult,
    LogoutResult,
    RefreshResult,
    TokenConfig,
    TokenService,
    TokenVerificationResult,
    User,
    UserDirectory,
    create_token_service,
    load_token_config_from_dict,
)
from authtokens.errors import (
    AlreadyRevoked,
    AuthTokensError,
    ClaimMismatch,
    InvalidCredentials,
    InvalidRefreshToken,
    KeyInitializationError,
    NotFound,
    NotInitializedError,
    RefreshTokenExpired,
    RefreshTokenStoreError,
    SignatureInvalid,
    TokenCreationError,
    TokenError,
    TokenExpired,
    TokenValidationError,
    Unauthorized,
)
from authtokens.keystore import KeyStore, SigningKeyPair
from authtokens.refresh import (
    InMemoryRefreshTokenStore,
    RefreshTokenRecord,
    RefreshTokenStore,
    SQLiteRefreshTokenStore,
)

__all__ = [
    "__version__",
    "TokenService",
    "TokenConfig",
    "TokenVerificationResult",
    "LoginResult",
    "RefreshResult",
    "LogoutResult",
    "User",
    "UserDirectory",
    "create_token_service",
    "load_token_config_from_dict",
    "KeyStore",
    "SigningKeyPair",
    "TokenCodec",
    "AccessTokenClaims",
    "RefreshTokenStore",
    "RefreshTokenRecord",
    "InMemoryRefreshTokenStore",
    "SQLiteRefreshTokenStore",
    "AuthTokensError",
    "KeyInitializationError",
    "NotInitializedError",
    "TokenCreationError",
    "TokenValidationError",
    "TokenError",
    "SignatureInvalid",
    "TokenExpired",
    "ClaimMismatch",
    "RefreshTokenStoreError",
    "NotFound",
    "AlreadyRevoked",
    "RefreshTokenExpired",
    "InvalidCredentials",
    "InvalidRefreshToken",
    "Unauthorized",
]

__version__ = "0.1.0"
