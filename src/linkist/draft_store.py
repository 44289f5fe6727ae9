"""Checkout draft storage for linkist.

A draft carries one customer's card configuration, submitted order payload
and pending payment between the configure, checkout and payment steps. Its
ID is the token the client passes from step to step.
"""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import DraftNotFoundError, DuplicateOrderError
from .models import CardConfig, CheckoutDraft, _utc_now

DRAFTS_DIR = "drafts"


class DraftStore:
    """Manages checkout draft storage and retrieval."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.drafts_dir = self.data_dir / DRAFTS_DIR

    def _path(self, draft_id: str) -> Path:
        # Draft IDs are UUIDs; refuse anything that could escape the directory
        if not draft_id or "/" in draft_id or "\\" in draft_id or draft_id.startswith("."):
            raise DraftNotFoundError(draft_id)
        return self.drafts_dir / f"{draft_id}.json"

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Exclusive lock for read-modify-write sequences spanning several calls."""
        self.drafts_dir.mkdir(parents=True, exist_ok=True)
        with open(self.drafts_dir / ".drafts.lock", "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def create(self, card_config: CardConfig | None = None) -> CheckoutDraft:
        draft = CheckoutDraft.create(card_config)
        self.save(draft)
        return draft

    def get(self, draft_id: str) -> CheckoutDraft:
        """
        Raises:
            DraftNotFoundError: If the draft doesn't exist.
        """
        path = self._path(draft_id)
        if not path.exists():
            raise DraftNotFoundError(draft_id)

        with open(path, "r", encoding="utf-8") as f:
            return CheckoutDraft.from_dict(json.load(f))

    def save(self, draft: CheckoutDraft) -> None:
        """Write a draft atomically."""
        self.drafts_dir.mkdir(parents=True, exist_ok=True)
        draft.updated_at = _utc_now()

        fd, temp_path = tempfile.mkstemp(dir=self.drafts_dir, prefix=".draft_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(draft.to_dict(), f, indent=2)
                f.write("\n")
            os.replace(temp_path, self._path(draft.id))
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def set_card_config(self, draft_id: str, card_config: CardConfig) -> CheckoutDraft:
        """
        Replace the card configuration, discarding any checkout built on the old one.

        Raises:
            DraftNotFoundError: If the draft doesn't exist.
            DuplicateOrderError: If the draft already produced an order.
        """
        with self.lock():
            draft = self.get(draft_id)
            if draft.order_id:
                raise DuplicateOrderError(draft.order_id, "draft already completed")
            draft.card_config = card_config
            draft.order_payload = None
            draft.pending_payment = None
            draft.last_payment_error = None
            self.save(draft)
        return draft

    def find_by_payment_reference(self, reference: str) -> CheckoutDraft | None:
        """Find the draft whose pending payment has this reference."""
        if not self.drafts_dir.exists():
            return None

        for file_path in self.drafts_dir.glob("*.json"):
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            pending = data.get("pending_payment")
            if pending and pending.get("reference") == reference:
                return CheckoutDraft.from_dict(data)
        return None
