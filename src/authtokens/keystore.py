"""Gerenciamento do par de chaves assimétricas usado para assinar tokens.

O KeyStore gera o par RSA no primeiro boot e o recarrega nos seguintes.
Dois artefatos são persistidos no diretório de chaves:

    - ``jwks.json``: documento JWKS público (pode ser exposto)
    - ``private-<kid>.pem``: chave privada PKCS8 (permissão 0600, nunca exposta)

A chave privada é gravada antes do JWKS. O JWKS funciona como marcador de
inicialização concluída: chave privada sem JWKS significa que o primeiro boot
não terminou e nenhum token foi emitido com ela.
"""

import copy
import json
import logging
import os
import secrets
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm
from jwt.exceptions import InvalidKeyError

from authtokens.errors import KeyInitializationError, NotInitializedError

SUPPORTED_ALGORITHMS = ("RS256", "RS384", "RS512")
MIN_KEY_SIZE = 2048
PRIVATE_JWK_MEMBERS = ("d", "p", "q", "dp", "dq", "qi")


@dataclass(frozen=True)
class SigningKeyPair:
    """Par de chaves ativo do processo."""

    key_id: str
    algorithm: str
    public_key: rsa.RSAPublicKey
    private_key: rsa.RSAPrivateKey


def _atomic_write(path: Path, data: bytes, mode: int) -> None:
    fd, temp_name = tempfile.mkstemp(dir=str(path.parent), prefix=path.name + ".", suffix=".tmp")
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            os.fchmod(f.fileno(), mode)
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        temp_path.replace(path)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise


def _new_key_id() -> str:
    return time.strftime("%Y%m%dT%H%M%SZ", time.gmtime()) + "-" + secrets.token_hex(4)


class KeyStore:
    """Dono do par de chaves de assinatura e do seu identificador público."""

    def __init__(
        self,
        key_dir: str,
        logger: logging.Logger,
        algorithm: str = "RS256",
        key_size: int = MIN_KEY_SIZE,
        jwks_filename: str = "jwks.json",
    ) -> None:
        """Configura o KeyStore sem tocar no disco.

        Args:
            key_dir (str): Diretório onde as chaves são persistidas.
            logger: Logger do serviço.
            algorithm (str): Algoritmo JWS (RS256, RS384 ou RS512).
            key_size (int): Tamanho da chave RSA gerada no primeiro boot.
            jwks_filename (str): Nome do arquivo JWKS público.

        Raises:
            ValueError: Se algum parâmetro for inválido.
        """
        if not isinstance(key_dir, str) or not key_dir.strip():
            raise ValueError("key_dir deve ser uma string valida")
        algorithm = str(algorithm).strip().upper()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"algorithm nao suportado: {algorithm}")
        if not isinstance(key_size, int) or key_size < MIN_KEY_SIZE:
            raise ValueError(f"key_size deve ser um inteiro >= {MIN_KEY_SIZE}")

        self._key_dir = Path(key_dir).resolve()
        self._logger = logger
        self._algorithm = algorithm
        self._key_size = key_size
        self._jwks_path = self._key_dir / jwks_filename
        self._lock = Lock()
        self._pair: Optional[SigningKeyPair] = None
        self._jwks: Optional[Dict[str, Any]] = None

    @property
    def algorithm(self) -> str:
        return self._algorithm

    @property
    def is_initialized(self) -> bool:
        return self._pair is not None

    def _private_key_path(self, key_id: str) -> Path:
        return self._key_dir / f"private-{key_id}.pem"

    def initialize(self) -> None:
        """Carrega o par de chaves persistido ou gera um novo.

        Chamadas repetidas não têm efeito.

        Raises:
            KeyInitializationError: Se o JWKS existir sem a chave privada
                correspondente, ou se os arquivos estiverem corrompidos.
        """
        with self._lock:
            if self._pair is not None:
                return

            try:
                self._key_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise KeyInitializationError(
                    f"Nao foi possivel criar o diretorio {self._key_dir}: {e}"
                ) from e

            if self._jwks_path.exists():
                self._load()
            else:
                self._generate()

    def _load(self) -> None:
        try:
            jwks = json.loads(self._jwks_path.read_text(encoding="utf-8"))
            jwk = jwks["keys"][0]
            key_id = jwk["kid"]
            public_key = RSAAlgorithm.from_jwk(jwk)
        except (OSError, ValueError, KeyError, IndexError, TypeError, InvalidKeyError) as e:
            raise KeyInitializationError(f"JWKS corrompido em {self._jwks_path}") from e

        if not isinstance(public_key, rsa.RSAPublicKey):
            raise KeyInitializationError("JWKS publicado contem material privado")

        alg = jwk.get("alg", self._algorithm)
        if alg != self._algorithm:
            raise KeyInitializationError(
                f"Algoritmo do JWKS ({alg}) difere do configurado ({self._algorithm})"
            )

        private_path = self._private_key_path(key_id)
        if not private_path.exists():
            # Estado parcial: nunca regenerar aqui.
            raise KeyInitializationError(
                f"Chave privada ausente para kid={key_id} em {private_path}"
            )

        try:
            private_key = serialization.load_pem_private_key(
                private_path.read_bytes(), password=None
            )
        except (OSError, ValueError, TypeError) as e:
            raise KeyInitializationError(f"Chave privada ilegivel para kid={key_id}") from e

        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise KeyInitializationError(f"Chave privada de kid={key_id} nao e RSA")

        if private_key.public_key().public_numbers() != public_key.public_numbers():
            raise KeyInitializationError(
                f"Chave privada de kid={key_id} nao corresponde ao JWKS publicado"
            )

        self._pair = SigningKeyPair(key_id, self._algorithm, public_key, private_key)
        self._jwks = jwks
        self._logger.info("Chaves carregadas. kid=%s", key_id)

    def _generate(self) -> None:
        orphans = sorted(self._key_dir.glob("private-*.pem"))
        if orphans:
            self._logger.warning(
                "Chaves privadas sem JWKS ignoradas (boot anterior incompleto): %s",
                ", ".join(p.name for p in orphans),
            )

        key_id = _new_key_id()
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=self._key_size)
        public_key = private_key.public_key()

        jwk = json.loads(RSAAlgorithm.to_jwk(public_key))
        jwk.update({"kid": key_id, "use": "sig", "alg": self._algorithm})
        jwks = {"keys": [jwk]}

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

        try:
            _atomic_write(self._private_key_path(key_id), private_pem, 0o600)
            _atomic_write(
                self._jwks_path,
                json.dumps(jwks, indent=2).encode("utf-8"),
                0o644,
            )
        except OSError as e:
            raise KeyInitializationError(f"Falha ao persistir chaves em {self._key_dir}") from e

        self._pair = SigningKeyPair(key_id, self._algorithm, public_key, private_key)
        self._jwks = jwks
        self._logger.info("Novo par de chaves gerado. kid=%s", key_id)

    def _require_pair(self) -> SigningKeyPair:
        if self._pair is None:
            raise NotInitializedError("KeyStore.initialize() ainda nao foi chamado")
        return self._pair

    def current_key_id(self) -> str:
        return self._require_pair().key_id

    def signing_key(self) -> rsa.RSAPrivateKey:
        return self._require_pair().private_key

    def public_key(self, key_id: str) -> Optional[rsa.RSAPublicKey]:
        """Retorna a chave pública do kid informado, ou None se desconhecido."""
        pair = self._require_pair()
        if key_id != pair.key_id:
            return None
        return pair.public_key

    def public_jwks(self) -> Dict[str, Any]:
        """Retorna uma cópia do documento JWKS público."""
        self._require_pair()
        jwks = copy.deepcopy(self._jwks)
        for jwk in jwks["keys"]:
            for member in PRIVATE_JWK_MEMBERS:
                jwk.pop(member, None)
        return jwks
