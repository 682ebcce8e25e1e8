"""Patient record model.

Records travel in three spellings: snake_case (this package's own JSON),
camelCase (peer devices) and the backend's column names (``DOB``,
``phone_number``, ``patient_notes``, integer ``id``). ``Patient.from_dict``
accepts all of them; ``to_dict`` always writes snake_case.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any


def _new_id() -> str:
    return str(uuid.uuid4())


def _pick(d: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present, non-None value among *keys*."""
    for key in keys:
        value = d.get(key)
        if value is not None:
            return value
    return default


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _str_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _timestamp(value: Any, default: float) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return default


@dataclass
class Patient:
    """One patient record."""

    name: str
    id: str = field(default_factory=_new_id)
    date_of_birth: str | None = None      # ISO date (YYYY-MM-DD)
    phone_number: str | None = None
    email: str | None = None
    address: str | None = None
    emergency_contact: str | None = None
    emergency_contact_phone: str | None = None
    medical_conditions: list[str] = field(default_factory=list)
    medications: list[str] = field(default_factory=list)
    allergies: list[str] = field(default_factory=list)
    notes: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def display_name(self) -> str:
        return self.name if self.name.strip() else "Unnamed Patient"

    @property
    def age(self) -> int | None:
        """Whole years since ``date_of_birth``, or None when unknown/unparseable."""
        if not self.date_of_birth:
            return None
        try:
            born = date.fromisoformat(self.date_of_birth[:10])
        except ValueError:
            return None
        today = date.today()
        return today.year - born.year - ((today.month, today.day) < (born.month, born.day))

    def touch(self) -> None:
        self.updated_at = time.time()

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match over the searchable fields."""
        q = query.lower()
        if q in self.name.lower():
            return True
        for value in (self.phone_number, self.email):
            if value and q in value.lower():
                return True
        for values in (self.medical_conditions, self.medications, self.allergies):
            if any(q in v.lower() for v in values):
                return True
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "date_of_birth": self.date_of_birth,
            "phone_number": self.phone_number,
            "email": self.email,
            "address": self.address,
            "emergency_contact": self.emergency_contact,
            "emergency_contact_phone": self.emergency_contact_phone,
            "medical_conditions": list(self.medical_conditions),
            "medications": list(self.medications),
            "allergies": list(self.allergies),
            "notes": self.notes,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Patient:
        now = time.time()
        raw_id = _pick(d, "id")
        return cls(
            id=str(raw_id) if raw_id is not None else _new_id(),
            name=str(_pick(d, "name", default="")),
            date_of_birth=_opt_str(_pick(d, "date_of_birth", "dateOfBirth", "DOB")),
            phone_number=_opt_str(_pick(d, "phone_number", "phoneNumber")),
            email=_opt_str(_pick(d, "email")),
            address=_opt_str(_pick(d, "address")),
            emergency_contact=_opt_str(_pick(d, "emergency_contact", "emergencyContact")),
            emergency_contact_phone=_opt_str(_pick(d, "emergency_contact_phone", "emergencyContactPhone")),
            medical_conditions=_str_list(_pick(d, "medical_conditions", "medicalConditions")),
            medications=_str_list(_pick(d, "medications")),
            allergies=_str_list(_pick(d, "allergies")),
            notes=_opt_str(_pick(d, "notes", "patient_notes")),
            created_at=_timestamp(_pick(d, "created_at", "createdAt"), now),
            updated_at=_timestamp(_pick(d, "updated_at", "updatedAt"), now),
        )
