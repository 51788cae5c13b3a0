"""Serviço de ciclo de vida de tokens de acesso e refresh.

Este módulo orquestra KeyStore, TokenCodec e RefreshTokenStore nas operações
expostas à camada HTTP: login, refresh, logout, validate e a publicação do
JWKS.

Classes principais:
    - TokenService: Orquestração do ciclo de vida dos tokens
    - TokenConfig: Configuração validada do serviço
    - TokenVerificationResult: Dataclass com resultado de validação de access token
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from authtokens.codec import REFRESH_TOKEN_TYPE, AccessTokenClaims, TokenCodec
from authtokens.errors import (
    AlreadyRevoked,
    InvalidCredentials,
    InvalidRefreshToken,
    NotFound,
    RefreshTokenExpired,
    TokenError,
    TokenExpired,
    Unauthorized,
)
from authtokens.keystore import MIN_KEY_SIZE, SUPPORTED_ALGORITHMS, KeyStore
from authtokens.refresh import (
    InMemoryRefreshTokenStore,
    RefreshTokenStore,
    SQLiteRefreshTokenStore,
)


@dataclass(frozen=True)
class User:
    """Usuário devolvido pelo diretório de usuários."""

    id: str
    email: str


class UserDirectory(Protocol):
    """Interface do diretório de usuários (armazenamento e senhas ficam fora deste pacote)."""

    def authenticate(self, email: str, password: str) -> Optional[User]:
        """Retorna o usuário se email e senha conferirem, senão None."""

    def get_by_id(self, user_id: str) -> Optional[User]:
        """Retorna o usuário pelo id, ou None."""


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class LogoutResult:
    revoked: int


@dataclass
class TokenVerificationResult:
    """Resultado da validação de um access token."""

    valid: bool
    status: str
    claims: Optional[AccessTokenClaims] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class TokenConfig:
    """Configuracao do TokenService."""

    key_dir: str
    audience: str
    issuer: str = "auth-service"
    algorithm: str = "RS256"
    key_size: int = MIN_KEY_SIZE
    access_token_ttl: int = 900
    refresh_token_ttl: int = 604800
    leeway: int = 0
    db_path: Optional[str] = None
    retention_seconds: int = 86400
    cleanup_interval_seconds: int = 300
    signed_refresh_tokens: bool = False
    revoke_family_on_reuse: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.key_dir, str) or not self.key_dir.strip():
            raise ValueError("AUTHTOKENS_KEY_DIR deve ser uma string valida")

        if not isinstance(self.audience, str) or not self.audience.strip():
            raise ValueError("AUTHTOKENS_AUDIENCE deve ser uma string não vazia")

        if not isinstance(self.issuer, str) or not self.issuer.strip():
            raise ValueError("AUTHTOKENS_ISSUER deve ser uma string valida")

        if not isinstance(self.algorithm, str) or not self.algorithm.strip():
            raise ValueError("AUTHTOKENS_ALGORITHM deve ser uma string valida")

        algoritmo = self.algorithm.strip().upper()
        object.__setattr__(self, "algorithm", algoritmo)
        if algoritmo not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                "AUTHTOKENS_ALGORITHM não suportado. Use " + ", ".join(SUPPORTED_ALGORITHMS)
            )

        if not isinstance(self.key_size, int) or self.key_size < MIN_KEY_SIZE:
            raise ValueError(f"AUTHTOKENS_KEY_SIZE deve ser um inteiro >= {MIN_KEY_SIZE}")

        if not isinstance(self.access_token_ttl, int) or self.access_token_ttl <= 0:
            raise ValueError("AUTHTOKENS_ACCESS_TTL deve ser um inteiro positivo")

        if not isinstance(self.refresh_token_ttl, int) or self.refresh_token_ttl <= 0:
            raise ValueError("AUTHTOKENS_REFRESH_TTL deve ser um inteiro positivo")

        if not isinstance(self.leeway, int) or self.leeway < 0:
            raise ValueError("AUTHTOKENS_LEEWAY deve ser um inteiro nao negativo")

        if self.db_path is not None:
            if not isinstance(self.db_path, str) or not self.db_path.strip():
                raise ValueError("AUTHTOKENS_DB_PATH deve ser uma string não vazia")

        if not isinstance(self.retention_seconds, int) or self.retention_seconds < 0:
            raise ValueError("AUTHTOKENS_RETENTION deve ser um inteiro nao negativo")

        if (
            not isinstance(self.cleanup_interval_seconds, int)
            or self.cleanup_interval_seconds <= 0
        ):
            raise ValueError("AUTHTOKENS_CLEANUP_INTERVAL deve ser um inteiro positivo")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_token_config_from_dict(app_config: Dict[str, Any]) -> TokenConfig:
    """Carrega configuracoes do TokenService a partir de um dict.

    Args:
        app_config: Dicionario de configuracao da aplicacao.

    Returns:
        TokenConfig: Configuracao validada do servico.
    """
    app_config.setdefault("AUTHTOKENS_ISSUER", "auth-service")
    app_config.setdefault("AUTHTOKENS_ALGORITHM", "RS256")
    app_config.setdefault("AUTHTOKENS_KEY_SIZE", MIN_KEY_SIZE)
    app_config.setdefault("AUTHTOKENS_ACCESS_TTL", 900)
    app_config.setdefault("AUTHTOKENS_REFRESH_TTL", 604800)
    app_config.setdefault("AUTHTOKENS_LEEWAY", 0)
    app_config.setdefault("AUTHTOKENS_RETENTION", 86400)
    app_config.setdefault("AUTHTOKENS_CLEANUP_INTERVAL", 300)
    app_config.setdefault("AUTHTOKENS_SIGNED_REFRESH", False)
    app_config.setdefault("AUTHTOKENS_REVOKE_ON_REUSE", False)

    key_dir = app_config.get("AUTHTOKENS_KEY_DIR")
    if key_dir is None:
        raise ValueError("AUTHTOKENS_KEY_DIR must be provided in app_config")

    audience = app_config.get("AUTHTOKENS_AUDIENCE")
    if audience is None:
        raise ValueError("AUTHTOKENS_AUDIENCE must be provided in app_config")

    return TokenConfig(
        key_dir=str(key_dir),
        audience=str(audience),
        issuer=str(app_config.get("AUTHTOKENS_ISSUER")),
        algorithm=str(app_config.get("AUTHTOKENS_ALGORITHM")),
        key_size=int(app_config.get("AUTHTOKENS_KEY_SIZE")),
        access_token_ttl=int(app_config.get("AUTHTOKENS_ACCESS_TTL")),
        refresh_token_ttl=int(app_config.get("AUTHTOKENS_REFRESH_TTL")),
        leeway=int(app_config.get("AUTHTOKENS_LEEWAY") or 0),
        db_path=(
            str(app_config.get("AUTHTOKENS_DB_PATH"))
            if app_config.get("AUTHTOKENS_DB_PATH")
            else None
        ),
        retention_seconds=int(app_config.get("AUTHTOKENS_RETENTION")),
        cleanup_interval_seconds=int(app_config.get("AUTHTOKENS_CLEANUP_INTERVAL")),
        signed_refresh_tokens=_as_bool(app_config.get("AUTHTOKENS_SIGNED_REFRESH")),
        revoke_family_on_reuse=_as_bool(app_config.get("AUTHTOKENS_REVOKE_ON_REUSE")),
    )


class TokenService:
    """Serviço de login, refresh, logout e validação de tokens."""

    def __init__(
        self,
        config: TokenConfig,
        logger: logging.Logger,
        key_store: KeyStore,
        refresh_store: RefreshTokenStore,
        users: UserDirectory,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        """Inicializa o serviço e carrega as chaves.

        Args:
            config (TokenConfig): Configurações validadas.
            logger: Logger do serviço.
            key_store (KeyStore): Dono do par de chaves de assinatura.
            refresh_store (RefreshTokenStore): Armazenamento de refresh tokens.
            users (UserDirectory): Diretório de usuários para login.
            codec (Optional[TokenCodec]): Codec pronto; se omitido, é criado a partir do
                key_store e da configuração.

        Raises:
            KeyInitializationError: Se o material de chaves persistido estiver inconsistente.
        """
        self._config = config
        self._logger = logger
        self._key_store = key_store
        self._refresh_store = refresh_store
        self._users = users

        key_store.initialize()

        self._codec = codec or TokenCodec(
            key_store,
            logger,
            issuer=config.issuer,
            audience=config.audience,
            leeway=config.leeway,
        )

        logger.debug(
            "TokenService inicializado. alg=%s kid=%s",
            key_store.algorithm,
            key_store.current_key_id(),
        )

    @property
    def codec(self) -> TokenCodec:
        return self._codec

    def _new_refresh_value(self, user_id: str) -> Optional[str]:
        if not self._config.signed_refresh_tokens:
            return None
        return self._codec.sign_refresh_token(user_id, self._config.refresh_token_ttl)

    def _sign_access_or_revoke(self, user: User, refresh_token: str) -> str:
        try:
            return self._codec.sign_access_token(user, self._config.access_token_ttl)
        except Exception:
            self._refresh_store.revoke(refresh_token)
            self._logger.error(
                "Refresh token revogado apos falha ao assinar access token. user_id=%s",
                user.id,
            )
            raise

    def login(self, email: str, password: str) -> LoginResult:
        """Autentica as credenciais e emite um par de tokens.

        Raises:
            InvalidCredentials: Usuário desconhecido ou senha incorreta (mesmo erro para
                ambos, para não permitir enumeração de usuários).
        """
        user = self._users.authenticate(email, password)
        if user is None:
            self._logger.info("Login recusado: credenciais invalidas")
            raise InvalidCredentials("Credenciais invalidas")

        user_id = str(user.id)
        refresh_token = self._refresh_store.issue(
            user_id,
            self._config.refresh_token_ttl,
            token=self._new_refresh_value(user_id),
        )
        access_token = self._sign_access_or_revoke(user, refresh_token)

        self._logger.debug("Login concluido. user_id=%s", user_id)
        return LoginResult(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._config.access_token_ttl,
        )

    def refresh(self, refresh_token: str) -> RefreshResult:
        """Troca um refresh token por um novo par de tokens (rotação).

        O token apresentado fica permanentemente revogado, mesmo que o cliente
        nunca receba o sucessor.

        Raises:
            InvalidRefreshToken: Token inexistente, revogado, rotacionado ou expirado. O
                cliente deve refazer o login, nunca repetir a chamada.
        """
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            raise InvalidRefreshToken("refresh token ausente")

        if self._config.signed_refresh_tokens:
            try:
                self._codec.verify(refresh_token, expected_type=REFRESH_TOKEN_TYPE)
            except TokenExpired as e:
                self._refresh_store.revoke(refresh_token)
                self._logger.info("Refresh token expirado revogado")
                raise InvalidRefreshToken("refresh token invalido") from e
            except TokenError as e:
                self._logger.warning("Refresh token rejeitado: %s", e.reason)
                raise InvalidRefreshToken("refresh token invalido") from e

        record = self._refresh_store.get(refresh_token)
        if record is None:
            self._logger.info("Refresh token desconhecido")
            raise InvalidRefreshToken("refresh token invalido")

        user_id = record.user_id
        try:
            new_token = self._refresh_store.rotate(
                refresh_token,
                user_id,
                self._config.refresh_token_ttl,
                new_token=self._new_refresh_value(user_id),
            )
        except AlreadyRevoked as e:
            self._handle_reuse(refresh_token, user_id)
            raise InvalidRefreshToken("refresh token invalido") from e
        except RefreshTokenExpired as e:
            self._logger.info("Refresh token expirado. user_id=%s", user_id)
            raise InvalidRefreshToken("refresh token invalido") from e
        except NotFound as e:
            self._logger.info("Refresh token desconhecido. user_id=%s", user_id)
            raise InvalidRefreshToken("refresh token invalido") from e

        user = self._users.get_by_id(user_id)
        if user is None:
            self._refresh_store.revoke(new_token)
            self._logger.warning("Refresh para usuario inexistente. user_id=%s", user_id)
            raise InvalidRefreshToken("refresh token invalido")

        access_token = self._sign_access_or_revoke(user, new_token)
        self._logger.debug("Refresh token rotacionado. user_id=%s", user_id)
        return RefreshResult(
            access_token=access_token,
            refresh_token=new_token,
            expires_in=self._config.access_token_ttl,
        )

    def _handle_reuse(self, refresh_token: str, user_id: str) -> None:
        record = self._refresh_store.get(refresh_token)
        if record is None or record.replaced_by is None:
            self._logger.info("Refresh token revogado reapresentado. user_id=%s", user_id)
            return

        self._logger.warning("Reuso de refresh token rotacionado. user_id=%s", user_id)
        if self._config.revoke_family_on_reuse:
            count = self._refresh_store.revoke_all(user_id)
            self._logger.warning(
                "Sessoes revogadas apos reuso. user_id=%s revogados=%d", user_id, count
            )

    def logout(
        self,
        refresh_token: Optional[str] = None,
        all_sessions: bool = False,
        access_token: Optional[str] = None,
    ) -> LogoutResult:
        """Revoga um refresh token, ou todos os do usuário.

        Args:
            refresh_token (Optional[str]): Token a revogar quando ``all_sessions`` é False.
            all_sessions (bool): Revoga todos os refresh tokens do dono do access token.
            access_token (Optional[str]): Access token válido, exigido quando
                ``all_sessions`` é True.

        Returns:
            LogoutResult: Quantidade de registros revogados por esta chamada.

        Raises:
            Unauthorized: Se ``all_sessions`` for True e o access token for inválido.
        """
        if all_sessions:
            try:
                claims = self._codec.verify(access_token or "")
            except TokenError as e:
                self._logger.warning("Logout global recusado: %s", e.reason)
                raise Unauthorized("access token invalido") from e
            count = self._refresh_store.revoke_all(claims.subject)
            self._logger.info("Logout global. user_id=%s revogados=%d", claims.subject, count)
            return LogoutResult(revoked=count)

        if not refresh_token:
            return LogoutResult(revoked=0)

        revoked = self._refresh_store.revoke(refresh_token)
        self._logger.info("Logout de sessao. revogado=%s", revoked)
        return LogoutResult(revoked=1 if revoked else 0)

    def verify_access_token(self, access_token: str) -> AccessTokenClaims:
        """Verifica um access token e retorna suas claims, levantando erros tipados."""
        return self._codec.verify(access_token)

    def validate(self, access_token: str) -> TokenVerificationResult:
        """Valida um access token sem efeitos colaterais.

        Expiração, assinatura e claims são distinguidos apenas em ``status``/``reason``;
        para o chamador externo o que importa é ``valid``.
        """
        if not isinstance(access_token, str) or not access_token.strip():
            return TokenVerificationResult(valid=False, status="invalid", reason="missing_token")

        try:
            claims = self._codec.verify(access_token)
        except TokenExpired as e:
            return TokenVerificationResult(valid=False, status="expired", reason=e.reason)
        except TokenError as e:
            return TokenVerificationResult(valid=False, status="invalid", reason=e.reason)

        return TokenVerificationResult(valid=True, status="valid", claims=claims)

    def public_key_set(self) -> Dict[str, Any]:
        return self._key_store.public_jwks()


def create_token_service(
    app_config: Dict[str, Any], users: UserDirectory, logger: logging.Logger
) -> TokenService:
    """Monta KeyStore, RefreshTokenStore e TokenService a partir de um dict de configuração.

    Sem ``AUTHTOKENS_DB_PATH`` o store fica em memória, o que só serve para testes.
    """
    config = load_token_config_from_dict(app_config)
    key_store = KeyStore(
        config.key_dir,
        logger,
        algorithm=config.algorithm,
        key_size=config.key_size,
    )

    refresh_store: RefreshTokenStore
    if config.db_path:
        refresh_store = SQLiteRefreshTokenStore(
            config.db_path,
            retention_seconds=config.retention_seconds,
            cleanup_interval_seconds=config.cleanup_interval_seconds,
        )
    else:
        logger.warning("AUTHTOKENS_DB_PATH ausente: refresh tokens em memoria (nao duravel)")
        refresh_store = InMemoryRefreshTokenStore(retention_seconds=config.retention_seconds)

    return TokenService(config, logger, key_store, refresh_store, users)
