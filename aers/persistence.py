"""
Pending-action persistence.

Single-slot JSON file holding one deferred report-start request, so it
survives the full reload caused by an identity-verification redirect.

Layout:
    <base_dir>/
        pending_report.json                 the slot
        pending_report.json.tmp-<hex>       in-flight store() write
        pending_report.json.claim-<hex>     in-flight restore_and_clear()

Format:
    {"description": "nausea", "files": [{"name": ..., "size": ..., "type": ...}]}

File content is never persisted, only metadata.
"""

import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from aers.contracts import FileMetadata, PendingAction

logger = logging.getLogger(__name__)

DEFAULT_SLOT = "pending_report.json"


def pending_action_to_json(action: PendingAction) -> Dict[str, Any]:
    data: Dict[str, Any] = {'description': action.description}
    if action.files is not None:
        data['files'] = [
            {'name': f.name, 'size': f.size, 'type': f.type} for f in action.files
        ]
    return data


def pending_action_from_json(data: Any) -> PendingAction:
    """
    Parse the persisted format.

    Raises:
        ValueError: If the payload does not match the format
    """
    if not isinstance(data, dict) or not isinstance(data.get('description'), str):
        raise ValueError("pending action must be an object with a 'description' string")

    files = data.get('files')
    if files is None:
        return PendingAction(description=data['description'])

    if not isinstance(files, list):
        raise ValueError("pending action 'files' must be a list")

    parsed = []
    for item in files:
        if not isinstance(item, dict):
            raise ValueError(f"pending action file entry must be an object, got {item!r}")
        try:
            size = int(item.get('size', 0))
        except (TypeError, ValueError):
            raise ValueError(f"pending action file size must be a number, got {item.get('size')!r}")
        parsed.append(FileMetadata(
            name=str(item.get('name', '')),
            size=size,
            type=str(item.get('type', '')),
        ))
    return PendingAction(description=data['description'], files=tuple(parsed))


class PendingActionStore:
    """
    Durable at-most-one pending action.

    Design:
    - store() overwrites (temp file + os.replace, never a torn slot)
    - restore_and_clear() claims the slot by atomic rename before reading,
      so only one reader can consume a given action, even across processes
    - Corrupt content is discarded and reported as absent
    """

    def __init__(self, base_dir: str = "outputs/pending", slot: str = DEFAULT_SLOT):
        """
        Initialize store.

        Args:
            base_dir: Directory holding the slot file (created on first store)
            slot: Slot file name
        """
        self.base_dir = Path(base_dir)
        self.slot_path = self.base_dir / slot
        self._lock = threading.Lock()
        logger.info(f"PendingActionStore initialized: {self.slot_path}")

    def store(self, action: PendingAction) -> None:
        """
        Persist the pending action, overwriting any prior one.

        Args:
            action: Action to persist
        """
        if not isinstance(action, PendingAction):
            raise TypeError(f"action must be PendingAction, got {type(action).__name__}")

        tmp_path = self.slot_path.with_name(f"{self.slot_path.name}.tmp-{uuid.uuid4().hex[:8]}")
        with self._lock:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w') as f:
                json.dump(pending_action_to_json(action), f, ensure_ascii=False)
            os.replace(tmp_path, self.slot_path)

        file_count = len(action.files) if action.files else 0
        logger.info(f"Stored pending action ({file_count} file(s) metadata only)")

    def peek(self) -> Optional[PendingAction]:
        """
        Read the pending action without consuming it.

        Returns:
            PendingAction, or None if absent or unreadable
        """
        with self._lock:
            if not self.slot_path.exists():
                return None
            try:
                return self._read(self.slot_path)
            except FileNotFoundError:
                return None
            except ValueError as e:
                logger.warning(f"Discarding unreadable pending action: {e}")
                self._unlink(self.slot_path)
                return None

    def restore_and_clear(self) -> Optional[PendingAction]:
        """
        Consume the pending action.

        Critical section: the slot is renamed to a claim file unique to this
        caller, so a concurrent caller finds nothing to rename and gets None.

        Returns:
            PendingAction if one was stored, else None
        """
        claim_path = self.slot_path.with_name(f"{self.slot_path.name}.claim-{uuid.uuid4().hex[:8]}")

        with self._lock:
            try:
                os.rename(self.slot_path, claim_path)
            except FileNotFoundError:
                return None

            try:
                action = self._read(claim_path)
            except ValueError as e:
                logger.warning(f"Discarding unreadable pending action: {e}")
                action = None
            finally:
                self._unlink(claim_path)

        if action is not None:
            logger.info("Restored and cleared pending action")
        return action

    def clear(self) -> None:
        """Drop the pending action without returning it"""
        with self._lock:
            removed = self._unlink(self.slot_path)
        if removed:
            logger.info("Cleared pending action")

    def _read(self, path: Path) -> PendingAction:
        with open(path, 'r') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"invalid JSON: {e}")
        return pending_action_from_json(data)

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
