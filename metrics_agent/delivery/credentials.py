"""
Metrics Agent - Credential Store

Bootstraps the TLS client credentials used to authenticate with the broker.
Bundled assets (root CA, client certificate, private key) are copied once into
a private keystore directory together with a fingerprint manifest; later runs
load the keystore directly.
"""

import hashlib
import json
import os
import shutil
import ssl
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

import structlog

from ..errors import CredentialError

logger = structlog.get_logger(__name__)

MANIFEST_NAME = "keystore.json"
KEYSTORE_FILES = {
    "root_ca": "root-ca.pem",
    "certificate": "client-cert.pem",
    "private_key": "client-key.pem",
}


@dataclass(frozen=True)
class Credentials:
    """Loaded broker credentials."""
    root_ca: Path
    certificate: Path
    private_key: Path
    ssl_context: ssl.SSLContext


def _fingerprint(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def build_ssl_context(
    root_ca: Path,
    certificate: Path,
    private_key: Path,
    password: Optional[str] = None,
) -> ssl.SSLContext:
    """Create a client TLS context; raises ssl.SSLError on malformed material."""
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=str(root_ca))
    context.load_cert_chain(str(certificate), str(private_key), password=password)
    return context


class CredentialStore:
    """Single-flight loader for the broker keystore."""

    def __init__(
        self,
        config: dict,
        data_dir: Path,
        context_factory: Callable[..., ssl.SSLContext] = build_ssl_context,
    ):
        self.config = config.get("credentials", {})
        self._assets_dir = Path(self.config.get("assets_dir", "./assets"))
        self._keystore_dir = Path(data_dir) / self.config.get("keystore_dir", "keystore")
        self._password = self.config.get("key_password")
        self._context_factory = context_factory

        self._lock = threading.Lock()
        self._credentials: Optional[Credentials] = None
        self._failure: Optional[CredentialError] = None

    @property
    def keystore_dir(self) -> Path:
        return self._keystore_dir

    @property
    def is_ready(self) -> bool:
        return self._credentials is not None

    @property
    def has_failed(self) -> bool:
        return self._failure is not None

    def _asset_paths(self) -> Dict[str, Path]:
        return {
            key: self._assets_dir / self.config.get(key, default)
            for key, default in (
                ("root_ca", "root-ca.pem"),
                ("certificate", "certificate.pem.crt"),
                ("private_key", "private.pem.key"),
            )
        }

    def _keystore_paths(self) -> Dict[str, Path]:
        return {key: self._keystore_dir / name for key, name in KEYSTORE_FILES.items()}

    def ensure_credentials(self) -> Credentials:
        """Load the keystore, creating it from bundled assets on first use."""
        with self._lock:
            if self._credentials is not None:
                return self._credentials
            if self._failure is not None:
                raise self._failure

            try:
                if (self._keystore_dir / MANIFEST_NAME).exists():
                    self._credentials = self._load_keystore()
                else:
                    self._credentials = self._create_keystore()
            except CredentialError as e:
                self._failure = e
                logger.error("Credential bootstrap failed", error=str(e))
                raise

            return self._credentials

    def _build_context(self, paths: Dict[str, Path]) -> ssl.SSLContext:
        try:
            return self._context_factory(
                paths["root_ca"],
                paths["certificate"],
                paths["private_key"],
                password=self._password,
            )
        except (ssl.SSLError, OSError, ValueError) as e:
            raise CredentialError(f"Malformed credential material: {e}") from e

    def _load_keystore(self) -> Credentials:
        manifest_path = self._keystore_dir / MANIFEST_NAME
        try:
            manifest = json.loads(manifest_path.read_text())
            fingerprints = manifest["fingerprints"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CredentialError(f"Keystore manifest unreadable: {e}") from e

        paths = self._keystore_paths()
        for key, path in paths.items():
            if not path.exists():
                raise CredentialError(f"Keystore file missing: {path.name}")
            if _fingerprint(path) != fingerprints.get(key):
                raise CredentialError(f"Keystore file fingerprint mismatch: {path.name}")

        context = self._build_context(paths)
        logger.info("Keystore loaded", path=str(self._keystore_dir))
        return Credentials(ssl_context=context, **paths)

    def _create_keystore(self) -> Credentials:
        assets = self._asset_paths()
        missing = [path.name for path in assets.values() if not path.is_file()]
        if missing:
            raise CredentialError(f"Credential assets missing: {', '.join(missing)}")

        # Validate before anything is written so a bad asset leaves no keystore behind.
        self._build_context(assets)

        paths = self._keystore_paths()
        try:
            self._keystore_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self._keystore_dir, 0o700)
            for key, source in assets.items():
                shutil.copyfile(source, paths[key])
                os.chmod(paths[key], 0o600)

            manifest = {
                "created_at": datetime.now(timezone.utc).isoformat(),
                "fingerprints": {key: _fingerprint(path) for key, path in paths.items()},
            }
            manifest_path = self._keystore_dir / MANIFEST_NAME
            manifest_path.write_text(json.dumps(manifest, indent=2))
            os.chmod(manifest_path, 0o600)
        except OSError as e:
            raise CredentialError(f"Cannot write keystore: {e}") from e

        context = self._build_context(paths)
        logger.info("Keystore created from assets", path=str(self._keystore_dir))
        return Credentials(ssl_context=context, **paths)
