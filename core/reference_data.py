"""
Pump Hydraulics — Core Reference Data

Structured reference tables for the calculation engine, field catalog and
recommendation layer. Conversion constants assume water at ambient
conditions (specific gravity 1.0); the engine scales them by the record's
density when density correction is enabled.
"""
from __future__ import annotations


# Water conversions
BAR_PER_METRE_WATER = 0.0981      # static head → pressure
METRE_PER_BAR_HEAD = 10.197       # differential pressure → differential head
METRE_PER_BAR_NPSH = 10.2         # NPSH available (rounded factor used on data sheets)
WATER_DENSITY_KG_M3 = 1000.0

DYNAMIC_LOSS_FRACTION = 0.30      # CV Δp must exceed 30% of frictional losses


# Motor electrical area classifications (must match backend ELECTRICAL_CLASS_CHOICES)
MOTOR_CLASSIFICATIONS = [
    "Class I, Division 1",
    "Class I, Division 2",
    "Class II, Division 1",
    "Class II, Division 2",
    "Non-Hazardous",
    "General Purpose",
]
DEFAULT_MOTOR_CLASSIFICATION = "General Purpose"

DOCUMENT_CLASSES = ["Confidential", "Internal", "Public", "Restricted"]
MOTOR_TYPES = ["AC Induction", "VFD", "Synchronous", "DC Motor"]
FLOW_OPTIONS = ["Max", "Normal", "Min"]
YES_NO = ["Yes", "No"]

DEFAULT_DESTINATION_DESCRIPTION = "Cooling Water Tank (06.5- T - 2307)"
DEFAULT_REVISION = "0"

# Submission status discriminator
STATUS_DRAFT = "draft"
STATUS_ISSUED_FOR_REVIEW = "ifr"
SUBMISSION_STATUSES = (STATUS_DRAFT, STATUS_ISSUED_FOR_REVIEW)

# Datasheet export formats → endpoint action and MIME type
EXPORT_FORMATS = {
    "xlsx": {
        "action": "generate_datasheet",
        "content_type": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    },
    "pdf": {
        "action": "generate_pdf_datasheet",
        "content_type": "application/pdf",
    },
}

# Approximate flow rate (m³/h) per HP, used to seed the template flow triplet
FLOW_RATE_PER_HP = {"max": 10, "normal": 8, "min": 5}


def is_valid_motor_classification(classification: str) -> bool:
    return classification in MOTOR_CLASSIFICATIONS
