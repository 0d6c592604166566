"""Read the settings env file, either plain dotenv or SOPS-encrypted.

The encrypted variant lives next to the plain one with an ``.enc`` suffix
(``secrets/internal.env.enc``) and is decrypted in memory only.
"""

import logging
import subprocess
from io import StringIO
from pathlib import Path

from dotenv import dotenv_values

from spamguard.errors import ConfigurationError

logger = logging.getLogger(__name__)


def decrypt_env_file(encrypted_path: str | Path) -> dict[str, str | None]:
    """Decrypt ``encrypted_path`` with ``sops`` and parse it as dotenv.

    Raises:
        ConfigurationError: If the file is missing, sops is not installed,
            or decryption fails.
    """
    path = Path(encrypted_path)
    if not path.exists():
        raise ConfigurationError(f"Encrypted settings file not found: {path}")

    try:
        result = subprocess.run(
            ["sops", "--decrypt", str(path)],
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError as exc:
        raise ConfigurationError("SPAMGUARD_USE_SOPS is set but the sops binary is not on PATH") from exc
    except subprocess.CalledProcessError as exc:
        raise ConfigurationError(f"sops could not decrypt {path}: {exc.stderr.strip()}") from exc

    return dict(dotenv_values(stream=StringIO(result.stdout)))


def read_env_file(path: str | Path, *, encrypted: bool = False) -> dict[str, str | None]:
    """Key-value pairs from the settings file at ``path``.

    A missing plain file yields an empty mapping, so settings can come from
    the process environment alone.
    """
    path = Path(path)
    if encrypted:
        return decrypt_env_file(path.with_name(path.name + ".enc"))
    if not path.exists():
        logger.debug("Settings file %s not found, using environment only", path)
        return {}
    return dict(dotenv_values(path))
