"""
File-backed credential store.

Each device owns one directory under the sessions root. Its existence means
the device has been paired before and is worth reconnecting.
"""

import shutil
from pathlib import Path

from wagate.devices.base import CredentialStore
from wagate.devices.errors import CredentialPurgeFailed
from wagate.logger import get_logger
from wagate.validation import validate_device_id

logger = get_logger(__name__)


class FileCredentialStore(CredentialStore):
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, device_id: str) -> Path:
        return self.root / validate_device_id(device_id)

    def load_credentials(self, device_id: str) -> bool:
        path = self.path_for(device_id)
        exists = path.is_dir()
        if exists:
            logger.debug(f"[{device_id}] Found existing credentials at {path}")
        else:
            logger.debug(f"[{device_id}] No existing credentials, a new QR code is needed")
        return exists

    def clear_credentials(self, device_id: str) -> bool:
        path = self.path_for(device_id)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            logger.debug(f"[{device_id}] Session directory does not exist: {path}")
            return False
        except OSError as e:
            logger.error(f"[{device_id}] Error removing session directory: {e}")
            raise CredentialPurgeFailed(device_id, str(e)) from e

        logger.info(f"[{device_id}] Session directory removed: {path}")
        return True

    def list_devices(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())
