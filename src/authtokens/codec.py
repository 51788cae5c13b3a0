"""Assinatura e verificação de tokens JWT com as chaves do KeyStore."""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import jwt

from authtokens.errors import (
    ClaimMismatch,
    SignatureInvalid,
    TokenCreationError,
    TokenExpired,
    TokenValidationError,
)
from authtokens.keystore import KeyStore

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

REQUIRED_CLAIMS = ["exp", "iat", "sub", "iss", "aud"]


@dataclass(frozen=True)
class AccessTokenClaims:
    """Claims verificadas de um token."""

    subject: str
    email: Optional[str]
    issuer: str
    audience: str
    issued_at: int
    expires_at: int
    type: str = ACCESS_TOKEN_TYPE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub": self.subject,
            "email": self.email,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "typ": self.type,
        }


class TokenCodec:
    """Cria e verifica tokens assinados. Não persiste nada."""

    def __init__(
        self,
        key_store: KeyStore,
        logger: logging.Logger,
        issuer: str,
        audience: str,
        leeway: int = 0,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        """Configura o codec.

        Args:
            key_store: KeyStore já inicializado (ou inicializado antes do primeiro uso).
            logger: Logger do serviço.
            issuer (str): Valor do claim ``iss`` emitido e exigido.
            audience (str): Valor do claim ``aud`` emitido e exigido.
            leeway (int): Tolerância, em segundos, na checagem de ``exp`` e ``iat``.
            time_fn: Relógio usado apenas na assinatura (``iat`` e ``exp``). A
                verificação usa o relógio do sistema via PyJWT, com ``leeway``.

        Raises:
            ValueError: Se algum parâmetro for inválido.
        """
        if not isinstance(issuer, str) or not issuer.strip():
            raise ValueError("issuer deve ser uma string valida")
        if not isinstance(audience, str) or not audience.strip():
            raise ValueError("audience deve ser uma string valida")
        if not isinstance(leeway, int) or leeway < 0:
            raise ValueError("leeway deve ser um inteiro nao negativo")
        self._key_store = key_store
        self._logger = logger
        self._issuer = issuer
        self._audience = audience
        self._leeway = leeway
        self._time_fn = time_fn

    @property
    def issuer(self) -> str:
        return self._issuer

    @property
    def audience(self) -> str:
        return self._audience

    def _get_now(self) -> int:
        return int(self._time_fn())

    def _encode(self, payload: Dict[str, Any]) -> str:
        # NotInitializedError propaga sem ser reclassificado.
        signing_key = self._key_store.signing_key()
        key_id = self._key_store.current_key_id()
        try:
            token = jwt.encode(
                payload=payload,
                key=signing_key,
                algorithm=self._key_store.algorithm,
                headers={"kid": key_id},
            )
        except (TypeError, ValueError, jwt.InvalidKeyError) as e:
            self._logger.exception(
                "Falha ao gerar JWT (encode). typ=%s sub=%s", payload["typ"], payload["sub"]
            )
            raise TokenCreationError("Falha ao gerar token") from e
        except Exception as e:
            self._logger.exception(
                "Falha inesperada ao gerar JWT. typ=%s sub=%s", payload["typ"], payload["sub"]
            )
            raise TokenCreationError("Falha inesperada ao gerar token") from e

        if isinstance(token, bytes):
            token = token.decode("utf-8")
        return token

    def _base_payload(self, subject: Any, ttl_seconds: int, token_type: str) -> Dict[str, Any]:
        if subject is None or not str(subject).strip():
            raise ValueError("sub deve ser informado")
        if not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
            raise ValueError("ttl_seconds deve ser um inteiro positivo")
        agora = self._get_now()
        return {
            "sub": str(subject),
            "iss": self._issuer,
            "aud": self._audience,
            "iat": agora,
            "exp": agora + ttl_seconds,
            "typ": token_type,
        }

    def sign_access_token(self, user: Any, ttl_seconds: int) -> str:
        """Assina um access token para o usuário.

        Args:
            user: Objeto com atributos ``id`` e ``email``.
            ttl_seconds (int): Tempo de vida em segundos.

        Returns:
            str: Token JWT compacto com ``kid`` no header.

        Raises:
            ValueError: Se o usuário não tiver id ou se o TTL for inválido.
            TokenCreationError: Se a assinatura falhar.
        """
        payload = self._base_payload(getattr(user, "id", None), ttl_seconds, ACCESS_TOKEN_TYPE)
        payload["email"] = getattr(user, "email", None)
        return self._encode(payload)

    def sign_refresh_token(self, user_id: Any, ttl_seconds: int) -> str:
        """Assina um refresh token. Quem chama é responsável por persisti-lo."""
        payload = self._base_payload(user_id, ttl_seconds, REFRESH_TOKEN_TYPE)
        payload["jti"] = str(uuid.uuid4())
        return self._encode(payload)

    def verify(
        self,
        token: str,
        expected_issuer: Optional[str] = None,
        expected_audience: Optional[str] = None,
        expected_type: str = ACCESS_TOKEN_TYPE,
    ) -> AccessTokenClaims:
        """Verifica assinatura, issuer, audience, tipo e expiração de um token.

        Args:
            token (str): Token JWT compacto.
            expected_issuer (Optional[str]): Issuer esperado (padrão: o do codec).
            expected_audience (Optional[str]): Audience esperada (padrão: a do codec).
            expected_type (str): Valor esperado da claim ``typ``.

        Returns:
            AccessTokenClaims: Claims verificadas.

        Raises:
            SignatureInvalid: kid desconhecido, assinatura inválida ou token malformado.
            TokenExpired: Assinatura válida, mas token expirado.
            ClaimMismatch: Issuer, audience, tipo ou claims obrigatórias não conferem.
            TokenValidationError: Falha inesperada ao decodificar.
        """
        if not isinstance(token, str) or not token.strip():
            raise SignatureInvalid("token ausente")

        issuer = expected_issuer or self._issuer
        audience = expected_audience or self._audience

        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            self._logger.warning("Header JWT malformado")
            raise SignatureInvalid("token malformado") from e

        key_id = header.get("kid")
        public_key = self._key_store.public_key(key_id) if isinstance(key_id, str) else None
        if public_key is None:
            self._logger.warning("JWT com kid desconhecido: %s", key_id)
            raise SignatureInvalid("kid desconhecido")

        try:
            payload = jwt.decode(
                token,
                key=public_key,
                algorithms=[self._key_store.algorithm],
                audience=audience,
                issuer=issuer,
                leeway=self._leeway,
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as e:
            self._logger.info("JWT expirado. kid=%s", key_id)
            raise TokenExpired("token expirado") from e
        except jwt.InvalidIssuerError as e:
            self._logger.warning("Issuer inválido no JWT")
            raise ClaimMismatch("issuer invalido") from e
        except jwt.InvalidAudienceError as e:
            self._logger.warning("Audience inválido no JWT")
            raise ClaimMismatch("audience invalido") from e
        except jwt.MissingRequiredClaimError as e:
            self._logger.warning("Claim obrigatoria ausente no JWT: %s", e.claim)
            raise ClaimMismatch(f"claim ausente: {e.claim}") from e
        except (jwt.DecodeError, jwt.InvalidAlgorithmError, jwt.InvalidKeyError) as e:
            self._logger.warning("Assinatura inválida no JWT. kid=%s", key_id)
            raise SignatureInvalid("assinatura invalida") from e
        except jwt.InvalidTokenError as e:
            self._logger.warning("JWT inválido: %s", type(e).__name__)
            raise ClaimMismatch("claims invalidas") from e
        except Exception as e:
            self._logger.exception("Falha inesperada ao decodificar JWT")
            raise TokenValidationError("Falha inesperada ao validar token") from e

        token_type = payload.get("typ")
        if token_type != expected_type:
            self._logger.warning("Tipo de JWT inesperado: %s (esperado %s)", token_type, expected_type)
            raise ClaimMismatch("tipo de token invalido")

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise ClaimMismatch("sub invalido")

        return AccessTokenClaims(
            subject=sub,
            email=payload.get("email"),
            issuer=payload["iss"],
            audience=payload["aud"],
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            type=token_type,
        )
