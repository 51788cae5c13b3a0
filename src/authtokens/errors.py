"""Hierarquia de erros do ciclo de vida de tokens."""


class AuthTokensError(Exception):
    """Erro base do pacote authtokens."""


class KeyInitializationError(AuthTokensError):
    """Lançado quando o material de chaves persistido está ausente ou corrompido."""


class NotInitializedError(AuthTokensError):
    """Lançado quando o KeyStore é usado antes de initialize()."""


class TokenCreationError(AuthTokensError):
    """Lançado quando um token JWT não pode ser criado."""


class TokenValidationError(AuthTokensError):
    """Lançado quando a validação falha por um erro inesperado."""


class TokenError(AuthTokensError):
    """Erro base para tokens rejeitados na verificação."""

    reason = "invalid"


class SignatureInvalid(TokenError):
    """Assinatura não confere, kid desconhecido ou token malformado."""

    reason = "bad_signature"


class TokenExpired(TokenError):
    """Assinatura válida, mas exp já passou."""

    reason = "expired"


class ClaimMismatch(TokenError):
    """Issuer, audience ou tipo do token não conferem."""

    reason = "claim_mismatch"


class RefreshTokenStoreError(AuthTokensError):
    """Erro base do RefreshTokenStore."""


class NotFound(RefreshTokenStoreError):
    """Refresh token inexistente (ou de outro usuário)."""


class AlreadyRevoked(RefreshTokenStoreError):
    """Refresh token já revogado ou rotacionado."""


class RefreshTokenExpired(RefreshTokenStoreError):
    """Refresh token expirado; o registro é revogado ao ser detectado."""


class InvalidCredentials(AuthTokensError):
    """Email ou senha inválidos."""


class InvalidRefreshToken(AuthTokensError):
    """Refresh token não pode ser usado; o cliente deve refazer o login."""


class Unauthorized(AuthTokensError):
    """Access token ausente, inválido ou expirado para a operação pedida."""
