from __future__ import annotations

from typing import Optional

OWNER_CLIENT = "CLIENT"
OWNER_AGENCY = "AGENCY"

# Pipeline order is fixed; index position is the stage's rank.
STAGES: list[tuple[str, str, str]] = [
    ("OFFER_LETTER_SIGN", "Offer Letter Sign", OWNER_AGENCY),
    ("VISA_APPLYING", "Visa Applying", OWNER_CLIENT),
    ("QVC_PAYMENT", "QVC Payment", OWNER_CLIENT),
    ("CONTRACT_SIGN", "Contract Sign", OWNER_AGENCY),
    ("MEDICAL_STATUS", "Medical Status", OWNER_AGENCY),
    ("FINGERPRINT", "Fingerprint", OWNER_AGENCY),
    ("VISA_PRINTING", "Visa Printing", OWNER_CLIENT),
    ("READY_TO_TRAVEL", "Ready to Travel", OWNER_AGENCY),
    ("TRAVEL_CONFIRMATION", "Travel Confirmation", OWNER_AGENCY),
    ("ARRIVAL_CONFIRMATION", "Arrival Confirmation", OWNER_CLIENT),
    ("DEPLOYED", "Deployed", OWNER_CLIENT),
]

STAGE_ORDER = [key for key, _label, _owner in STAGES]
FIRST_STAGE = STAGE_ORDER[0]

_INDEX = {key: i for i, key in enumerate(STAGE_ORDER)}
_OWNERS = {key: owner for key, _label, owner in STAGES}
_LABELS = {key: label for key, label, _owner in STAGES}

STAGE_STATUSES = {
    "PENDING",
    "COMPLETED",
    "FAILED",
    "REFUSED",
    "PAID",
    "SIGNED",
    "TRAVELED",
    "RESCHEDULED",
    "CANCELED",
}


def normalize_stage(value) -> str:
    return str(value or "").upper().strip()


def is_stage(value) -> bool:
    return normalize_stage(value) in _INDEX


def is_stage_status(value) -> bool:
    return normalize_stage(value) in STAGE_STATUSES


def next_stage(current: str) -> Optional[str]:
    idx = _INDEX.get(normalize_stage(current))
    if idx is None:
        raise ValueError(f"Unknown stage: {current}")
    if idx + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[idx + 1]


def owner_of(stage: str) -> str:
    try:
        return _OWNERS[normalize_stage(stage)]
    except KeyError:
        raise ValueError(f"Unknown stage: {stage}") from None


def label_of(stage: str) -> str:
    return _LABELS.get(normalize_stage(stage), normalize_stage(stage))
