"""JSON-file backed patient repository.

The repository is the only owner of patient records on a device. Everything
else (gateway, aggregator, peers) receives copies.

Persistence
-----------
Records are stored as ``{"version": 1, "updated_at": ..., "patients": [...]}``
and written through on every mutation with an atomic tmp-file replace.
Search is synchronous: it runs on the caller's event loop and touches only
the in-memory list.
"""

from __future__ import annotations

import copy
import json
import os
import time
from pathlib import Path

from loguru import logger

from bitmedic.store.models import Patient


class PatientRepository:
    """Durable store of local patient records."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self._patients: list[Patient] = []

    # -- persistence ---------------------------------------------------------

    def load(self) -> None:
        """Load records from disk. Missing or empty file → empty store."""
        if not self.path.exists():
            logger.debug("[PatientStore] no file at {}, starting fresh", self.path)
            return
        try:
            text = self.path.read_text(encoding="utf-8").strip()
            if not text:
                return
            data = json.loads(text)
        except (json.JSONDecodeError, OSError) as exc:
            logger.error("[PatientStore] failed to load {}: {}", self.path, exc)
            return

        loaded: list[Patient] = []
        for entry in data.get("patients", []):
            try:
                loaded.append(Patient.from_dict(entry))
            except (AttributeError, TypeError) as exc:
                logger.warning("[PatientStore] skipping malformed record: {}", exc)
        self._patients = loaded
        logger.info("[PatientStore] loaded {} patients from {}", len(loaded), self.path)

    def _save(self) -> None:
        data = {
            "version": 1,
            "updated_at": time.time(),
            "patients": [p.to_dict() for p in self._patients],
        }
        tmp = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(str(tmp), str(self.path))
        except OSError as exc:
            logger.error("[PatientStore] failed to save: {}", exc)

    # -- queries -------------------------------------------------------------

    def search(self, query: str) -> list[Patient]:
        """Return copies of records matching *query*; blank query → all."""
        q = query.strip()
        if not q:
            return self.all()
        return [copy.deepcopy(p) for p in self._patients if p.matches(q)]

    def get(self, patient_id: str) -> Patient | None:
        for p in self._patients:
            if p.id == patient_id:
                return copy.deepcopy(p)
        return None

    def all(self) -> list[Patient]:
        return [copy.deepcopy(p) for p in self._patients]

    def __len__(self) -> int:
        return len(self._patients)

    # -- mutations -----------------------------------------------------------

    def add(self, patient: Patient) -> Patient:
        stored = copy.deepcopy(patient)
        self._patients.append(stored)
        self._save()
        logger.info("[PatientStore] added patient {} ({})", stored.display_name, stored.id)
        return copy.deepcopy(stored)

    def update(self, patient: Patient) -> bool:
        """Replace the record with the same id. Returns False if unknown."""
        for index, existing in enumerate(self._patients):
            if existing.id == patient.id:
                updated = copy.deepcopy(patient)
                updated.touch()
                self._patients[index] = updated
                self._save()
                return True
        logger.warning("[PatientStore] update for unknown patient {}", patient.id)
        return False

    def delete(self, patient_id: str) -> bool:
        before = len(self._patients)
        self._patients = [p for p in self._patients if p.id != patient_id]
        if len(self._patients) == before:
            return False
        self._save()
        logger.info("[PatientStore] deleted patient {}", patient_id)
        return True

    def clear(self) -> None:
        self._patients.clear()
        self._save()
