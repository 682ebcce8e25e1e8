"""On-device patient records: model and JSON-file repository."""

from bitmedic.store.models import Patient
from bitmedic.store.repository import PatientRepository

__all__ = ["Patient", "PatientRepository"]
