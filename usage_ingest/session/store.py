"""
Single-slot on-disk credential store.

At most one credential file exists. Saving deletes every existing file and
then writes a new randomly named one with owner-only permissions; this
assumes a single writer (the human-driven login flow). Readers may run
concurrently with no writer in flight.
"""

import json
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from usage_ingest.config.loader import load_encryption_key
from usage_ingest.errors import SessionFormatError
from usage_ingest.logging_config import get_logger

from .crypto import EncryptedEnvelope, decrypt_payload, encrypt_payload

logger = get_logger(__name__)

FILE_PREFIX = "session_"
FILE_SUFFIX = ".json"


@dataclass(frozen=True)
class SessionRecord:
    """A credential read back from disk."""
    filename: str
    payload: Dict[str, Any]
    created_at: Optional[str]
    encrypted: bool


class SessionStore:
    """Owner of the credential file.

    The encryption key is resolved on every call, so a missing or malformed
    key surfaces as a ValidationError at the moment it is needed.
    """

    def __init__(self, directory: str, key_loader: Callable[[], bytes] = load_encryption_key):
        self.directory = Path(directory)
        self._key_loader = key_loader

    def save(self, payload: Dict[str, Any], encrypt: bool = True) -> str:
        """Replace the stored credential.

        Args:
            payload: JSON-serializable credential document
            encrypt: Encrypt with AES-256-GCM (default)

        Returns:
            Name of the written file

        Raises:
            ValidationError: If encryption is requested and the key is missing
                or malformed
        """
        created_at = datetime.now(timezone.utc).isoformat()
        if encrypt:
            key = self._key_loader()
            envelope = encrypt_payload(json.dumps(payload).encode("utf-8"), key)
            document: Dict[str, Any] = {
                "ciphertext": envelope.ciphertext,
                "iv": envelope.iv,
                "tag": envelope.tag,
                "createdAt": created_at,
                "isEncrypted": True,
            }
        else:
            document = {**payload, "isEncrypted": False, "createdAt": created_at}
        serialized = json.dumps(document)

        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        removed = self.clear()

        filename = f"{FILE_PREFIX}{secrets.token_hex(16)}{FILE_SUFFIX}"
        path = self.directory / filename
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(serialized)
        os.chmod(path, 0o600)

        logger.info("session.saved", filename=filename, encrypted=encrypt, replaced=removed)
        return filename

    def read(self) -> Optional[SessionRecord]:
        """Read the stored credential.

        Returns:
            The credential, or None when no credential file exists

        Raises:
            SessionAuthenticationError: If an encrypted credential fails
                authentication (wrong key or tampering)
            SessionFormatError: If the file is not a credential document
            ValidationError: If the file is encrypted and the key is missing
        """
        files = self._credential_files()
        if not files:
            return None
        path = files[0]
        if len(files) > 1:
            logger.warning("session.multiple_files", count=len(files), selected=path.name)

        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SessionFormatError(f"Cannot read credential file {path.name}: {e}") from e
        if not isinstance(document, dict):
            raise SessionFormatError(f"Credential file {path.name} is not an object")

        if not document.get("isEncrypted"):
            payload = {k: v for k, v in document.items() if k != "isEncrypted"}
            return SessionRecord(path.name, payload, document.get("createdAt"), encrypted=False)

        try:
            envelope = EncryptedEnvelope(
                ciphertext=document["ciphertext"],
                iv=document["iv"],
                tag=document["tag"],
            )
        except KeyError as e:
            raise SessionFormatError(f"Credential file {path.name} is missing {e}") from e

        plaintext = decrypt_payload(envelope, self._key_loader())
        try:
            payload = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SessionFormatError(f"Decrypted credential is not JSON: {e}") from e
        return SessionRecord(path.name, payload, document.get("createdAt"), encrypted=True)

    def exists(self) -> bool:
        return bool(self._credential_files())

    def clear(self) -> int:
        """Delete every credential file; returns how many were removed."""
        files = self._credential_files()
        for path in files:
            path.unlink(missing_ok=True)
        return len(files)

    def _credential_files(self) -> List[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(
            p for p in self.directory.iterdir()
            if p.is_file() and p.name.startswith(FILE_PREFIX) and p.name.endswith(FILE_SUFFIX)
        )
