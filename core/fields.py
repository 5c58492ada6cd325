"""
Pump Data Sheet — Field Catalog and API Field Mapping

Static metadata for every field on the pump hydraulic calculation sheet, grouped
into the sheet's sections, plus the translation between the engine's camelCase
record keys and the snake_case payload the datasheet backend stores.

The payload mapping mirrors the backend schema, including the "template"
columns that repeat a single value across _max/_normal/_min triplets. Those
duplications are kept as-is until the schema owners decide whether the ranges
are real.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from core.reference_data import (
    DEFAULT_DESTINATION_DESCRIPTION,
    DEFAULT_REVISION,
    DOCUMENT_CLASSES,
    FLOW_OPTIONS,
    FLOW_RATE_PER_HP,
    MOTOR_CLASSIFICATIONS,
    MOTOR_TYPES,
    YES_NO,
)


@dataclass(frozen=True)
class FieldSpec:
    """Metadata for a single data-sheet field."""

    name: str
    label: str
    type: str = "number"  # text | number | select
    unit: str = ""
    required: bool = False
    calculated: bool = False
    options: tuple = ()
    default: Optional[str] = None
    precision: Optional[int] = None  # fractional digits for calculated numbers

    def to_dict(self) -> dict:
        data = {
            "name": self.name,
            "label": self.label,
            "type": self.type,
            "unit": self.unit,
            "required": self.required,
            "calculated": self.calculated,
        }
        if self.options:
            data["options"] = list(self.options)
        if self.default is not None:
            data["default"] = self.default
        if self.precision is not None:
            data["precision"] = self.precision
        return data


@dataclass(frozen=True)
class Section:
    key: str
    title: str
    fields: tuple = field(default_factory=tuple)
    notes: tuple = ()


def _text(name, label, required=True, default=None):
    return FieldSpec(name, label, type="text", required=required, default=default)


def _select(name, label, options, required=True):
    return FieldSpec(name, label, type="select", options=tuple(options), required=required)


def _num(name, label, unit="", required=True):
    return FieldSpec(name, label, unit=unit, required=required)


def _calc(name, label, unit, precision):
    return FieldSpec(name, label, unit=unit, calculated=True, precision=precision)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

SECTIONS: tuple[Section, ...] = (
    Section("PROJECT_INFO", "Project Information", (
        _text("agreementNo", "Agreement No"),
        _text("projectNo", "Project No."),
        _text("documentNo", "Document No."),
        _text("revision", "Revision"),
        _select("documentClass", "Document Class", DOCUMENT_CLASSES),
        _text("tagNo", "Tag No."),
        _text("service", "Service"),
        _select("motorClassification", "Motor Classification", MOTOR_CLASSIFICATIONS),
        _num("temperature", "Temperature", "°C"),
        _num("fluidViscosityAtTemp", "Fluid Viscosity @ Temp", "cP"),
        _num("hp", "HP (Horsepower)", "HP"),
        _num("pumpCenterlineElevation", "Pump Central Line Elevation From Grade", "m"),
        _num("elevationSourceBTL", "Elevation of Source BTL From Pump Central Line", "m"),
    )),
    Section("GENERAL_INFO", "Discharge Pressure Calculations", (
        _text("destinationDescription", "Destination Description", default=DEFAULT_DESTINATION_DESCRIPTION),
        _select("flow", "Flow", FLOW_OPTIONS),
        _num("destinationPressure", "Destination Pressure", "barg"),
        _num("destinationElevation", "Destination EL from Pump C/L", "m"),
        _num("lineFrictionLoss", "Line Friction Loss", "bar"),
        _num("flowMeterDelP", "Flow meter Del P", "bar"),
        _num("otherLosses", "Other Losses", "bar", required=False),
        _num("controlValve", "Control Valve", "bar", required=False),
        _num("miscItem", "Misc Item", "bar", required=False),
        _num("contingency", "Contingency", "bar", required=False),
        _calc("totalDischargePressure", "Total Discharge Pressure", "bar", 2),
    )),
    Section("CONTROL_VALVE_DELTA_P", "Control Valve Delta P Check", (
        _num("density", "Density", "kg/m³"),
        _num("cvMax", "CV Max"),
        _num("cvMin", "CV Min"),
        _calc("cvRatio", "CVRatio (Max/Min)", "", 2),
        _num("totalFrictionalLosses", "Total Frictional Losses @ Normal Flow", "bar"),
        _calc("dynamicLosses30Percent", "30% Dynamic Losses", "bar", 2),
        _num("cvPressureDrop", "CV Pr. drop @ Normal Flow", "bar"),
        _num("cvRangeability", "CV Rangeability"),
        _select("cvRatioWithinRange", "A. CV Ratio Within Range", YES_NO, required=False),
        _select("cvPressureDropCheck", "B. CV Pr. drop@Normal Flow > 30% Fric Pr. Loss", YES_NO, required=False),
    )),
    Section("SUCTION_PRESSURE_CALCULATIONS", "Suction Pressure Calculations", (
        _num("sourceOpPressure", "Source Op. Pressure", "bar(g)"),
        _num("suctionELm", "Suction ELm", "m"),
        _num("inlineInstLosses", "Inline Inst. Losses", "bar"),
        _num("lineFricLosses", "Line Fric Losses", "bar"),
        _num("controlValveSuction", "Control Valve", "bar"),
        _num("miscItemsSuction", "Misc Items", "bar"),
        _calc("totalSuctionLosses", "Total Suction Losses", "bar", 3),
        _calc("totalSuctionPressure", "Total Suction Pressure", "bar(g)", 3),
    )),
    Section("POWER_CONSUMPTION_PER_PUMP", "Power Consumption Per Pump", (
        _num("hydraulicPower", "Hydraulic Power", "kW"),
        _num("pumpEfficiency", "Pump Efficiency", "%"),
        _calc("breakHorsePower", "Break Horse Power", "kW", 3),
        _num("motorRating", "Motor Rating", "kW"),
        _num("motorEfficiency", "Motor Efficiency", "%"),
        _calc("powerConsumption", "Power Consumption", "kW", 3),
        _select("typeOfMotor", "Type of Motor", MOTOR_TYPES),
    )),
    Section("NPSH_AVAILABILITY", "NPSH (Net Positive Suction Head) AVAILABILITY", (
        _num("suctionPressureNpsh", "Suction Pressure", "bar(g)"),
        _num("vaporPressure", "Vapor Pressure", "bar(g)"),
        _calc("npsha", "NPSHA", "m", 2),
        _num("safetyMarginNpsha", "Safety Margin for NPSHA", "m"),
        _calc("npshaWithSafetyMargin", "NPSHA (With Safety Margin)", "m", 2),
    )),
    Section("PUMP_CALCULATION_RESULTS", "Pump Calculation Results", (
        _calc("dischargePressure", "Discharge Pressure", "bar(g)", 2),
        _calc("suctionPressureResult", "Suction Pressure", "bar(g)", 3),
        _calc("differentialPressure", "Differential Pressure", "bar", 3),
        _calc("differentialHead", "Differential Head", "m", 3),
        _calc("npshaResult", "NPSHA", "m", 3),
    )),
    Section("MAX_SUCTION_PRESSURE", "Max Suction Pressure Max Density", (
        _num("suctionVesselMaxOpPressure", "Suction Vessel Max Op. Pressure", "bar(g)", required=False),
        _num("suctionElM", "Suction EL,m", "m", required=False),
        _num("tlToHhllM", "TL to HHLL, m", "m", required=False),
        _calc("maxSuctionPressure", "Max Suction Pressure", "bar(g)", 3),
    )),
    Section("MCF_CALCULATION", "Minimum Flow Line Control Valve Calculation", (
        _num("pumpMinimumFlow", "Pump Minimum Flow", "m³/hr", required=False),
        _num("fluidDensityMcf", "Fluid Density", "kg/m³", required=False),
        _num("pumpDischargePressureMinFlow", "Pump Discharge Pressure at Min Flow", "bar(g)", required=False),
        _num("destinationPressure", "Destination Pressure", "bar(g)", required=False),
        _num("elDestinationPumpCl", "EL of Destination from Pump C/L", "m", required=False),
        _num("mcfLineFrictionLosses", "MCF Line Friction Losses", "bar", required=False),
        _num("flowMeterLosses", "Flow Meter Losses", "bar", required=False),
        _num("miscPressureDropMcf", "Misc. Pressure Drop", "bar", required=False),
        _calc("mcfCvPressureDrop", "MCF CV Pressure Drop", "bar", 3),
    )),
    Section("MAX_DISCHARGE_PRESSURE", "Max Discharge Pressure at Max Density", (
        _text("api610ToleranceUsed", "API 610 Tolerance used", required=False),
        _num("apiToleranceFactor", "API Tolerance factor", required=False),
        _num("shutOffPressureFactor", "Shut off pressure factor", required=False),
        _calc("shutOffDifferentialPressure", "Shut off Differential Pressure", "bar", 3),
    )),
    Section("MAX_DISCHARGE_PRESSURE_OPTIONS", "Option for Max Discharge Pressure", (
        _calc("maximumDischargePressureOption1", "Maximum Discharge Pressure (Option 1)", "bar", 3),
        _calc("maximumDischargePressureOption2", "Maximum Discharge Pressure (Option 2)", "bar", 3),
    ), notes=(
        "Option 1: Maximum Discharge Pressure = Maximum Suction Pressure + Rated Differential Pressure",
        "Option 2: Maximum Discharge Pressure = Maximum Suction Pressure + Shut off Differential Pressure",
    )),
)


def _index_fields() -> dict[str, FieldSpec]:
    # destinationPressure appears in two sections; the first definition wins.
    index: dict[str, FieldSpec] = {}
    for section in SECTIONS:
        for spec in section.fields:
            index.setdefault(spec.name, spec)
    return index


FIELDS: dict[str, FieldSpec] = _index_fields()

CALCULATED_FIELDS = frozenset(name for name, spec in FIELDS.items() if spec.calculated)
NUMERIC_FIELDS = frozenset(name for name, spec in FIELDS.items() if spec.type == "number")
INPUT_NUMERIC_FIELDS = NUMERIC_FIELDS - CALCULATED_FIELDS


def is_calculated(name: str) -> bool:
    return name in CALCULATED_FIELDS


def precision_of(name: str) -> int:
    spec = FIELDS.get(name)
    if spec is None or spec.precision is None:
        raise KeyError(f"No fixed precision for field '{name}'")
    return spec.precision


def sections_as_dicts() -> list[dict]:
    """Section/field metadata in a JSON-friendly shape for form clients."""
    return [
        {
            "key": s.key,
            "title": s.title,
            "fields": [f.to_dict() for f in s.fields],
            "notes": list(s.notes),
        }
        for s in SECTIONS
    ]


def missing_required(record: dict[str, Any]) -> list[str]:
    """Required input fields that are still empty."""
    return [
        name for name, spec in FIELDS.items()
        if spec.required and not spec.calculated and _is_empty(record.get(name))
    ]


# ---------------------------------------------------------------------------
# camelCase ↔ snake_case
# ---------------------------------------------------------------------------

_UPPER = re.compile(r"([A-Z])")


def to_snake_case(name: str) -> str:
    """Naive camel → snake conversion used for the leftover-field grouping.

    Every capital gets its own underscore (``suctionELm`` → ``suction_e_lm``);
    the explicit tables below carry the real column names.
    """
    return _UPPER.sub(r"_\1", name).lower()


# (record key, api key) per payload block
PROJECT_INFO_MAP = (
    ("agreementNo", "agreement_no"),
    ("projectNo", "project_no"),
    ("documentNo", "document_no"),
    ("revision", "revision"),
    ("documentClass", "document_class"),
    ("tagNo", "tag_no"),
    ("service", "service"),
    ("motorClassification", "motor_classification"),
    ("temperature", "temperature"),
    ("fluidViscosityAtTemp", "fluid_viscosity_at_temp"),
    ("hp", "hp"),
    ("pumpCenterlineElevation", "pump_centerline_elevation"),
    ("elevationSourceBTL", "elevation_source_btl"),
)

DISCHARGE_PRESSURE_MAP = (
    ("destinationDescription", "destination_description"),
    ("flow", "flow_type"),
    ("destinationPressure", "destination_pressure"),
    ("destinationElevation", "destination_elevation"),
    ("lineFrictionLoss", "line_friction_loss"),
    ("flowMeterDelP", "flow_meter_del_p"),
    ("otherLosses", "other_losses"),
    ("controlValve", "control_valve"),
    ("miscItem", "misc_item"),
    ("contingency", "contingency"),
    ("totalDischargePressure", "total_discharge_pressure"),
)

CONTROL_VALVE_MAP = (
    ("density", "density"),
    ("cvMax", "cv_max"),
    ("cvMin", "cv_min"),
    ("cvRatio", "cv_ratio"),
    ("totalFrictionalLosses", "total_frictional_losses"),
    ("dynamicLosses30Percent", "dynamic_losses_30_percent"),
    ("cvPressureDrop", "cv_pressure_drop"),
    ("cvRangeability", "cv_rangeability"),
    ("cvRatioWithinRange", "cv_ratio_within_range"),
    ("cvPressureDropCheck", "cv_pressure_drop_check"),
)

SUCTION_PRESSURE_MAP = (
    ("sourceOpPressure", "source_op_pressure"),
    ("suctionELm", "suction_elm"),
    ("inlineInstLosses", "inline_inst_losses"),
    ("lineFricLosses", "line_fric_losses"),
    ("controlValveSuction", "control_valve_suction"),
    ("miscItemsSuction", "misc_items_suction"),
    ("totalSuctionLosses", "total_suction_losses"),
    ("totalSuctionPressure", "total_suction_pressure"),
)

POWER_CONSUMPTION_MAP = (
    ("hydraulicPower", "hydraulic_power"),
    ("pumpEfficiency", "pump_efficiency"),
    ("breakHorsePower", "break_horse_power"),
    ("motorRating", "motor_rating"),
    ("motorEfficiency", "motor_efficiency"),
    ("powerConsumption", "power_consumption"),
    ("typeOfMotor", "type_of_motor"),
)

NPSH_MAP = (
    ("suctionPressureNpsh", "suction_pressure_npsh"),
    ("vaporPressure", "vapor_pressure"),
    ("npsha", "npsha"),
    ("safetyMarginNpsha", "safety_margin_npsha"),
    ("npshaWithSafetyMargin", "npsha_with_safety_margin"),
)

PUMP_RESULTS_MAP = (
    ("dischargePressure", "discharge_pressure"),
    ("suctionPressureResult", "suction_pressure_result"),
    ("differentialPressure", "differential_pressure"),
    ("differentialHead", "differential_head"),
    ("npshaResult", "npsha_result"),
)

MAX_SUCTION_MAP = (
    ("suctionVesselMaxOpPressure", "suction_vessel_max_op_pressure"),
    ("suctionElM", "suction_el_m"),
    ("tlToHhllM", "tl_to_hhll_m"),
    ("maxSuctionPressure", "max_suction_pressure"),
)

MCF_MAP = (
    ("pumpMinimumFlow", "pump_minimum_flow"),
    ("fluidDensityMcf", "fluid_density_mcf"),
    ("pumpDischargePressureMinFlow", "pump_discharge_pressure_min_flow"),
    ("destinationPressure", "destination_pressure"),
    ("elDestinationPumpCl", "el_destination_pump_cl"),
    ("mcfLineFrictionLosses", "mcf_line_friction_losses"),
    ("flowMeterLosses", "flow_meter_losses"),
    ("miscPressureDropMcf", "misc_pressure_drop_mcf"),
    ("mcfCvPressureDrop", "mcf_cv_pressure_drop"),
)

MAX_DISCHARGE_MAP = (
    ("api610ToleranceUsed", "api_610_tolerance_used"),
    ("apiToleranceFactor", "api_tolerance_factor"),
    ("shutOffPressureFactor", "shut_off_pressure_factor"),
    ("shutOffDifferentialPressure", "shut_off_differential_pressure"),
)

MAX_DISCHARGE_OPTIONS_MAP = (
    ("maximumDischargePressureOption1", "maximum_discharge_pressure_option_1"),
    ("maximumDischargePressureOption2", "maximum_discharge_pressure_option_2"),
)

_DIRECT_MAPS = (
    PROJECT_INFO_MAP, DISCHARGE_PRESSURE_MAP, CONTROL_VALVE_MAP, SUCTION_PRESSURE_MAP,
    POWER_CONSUMPTION_MAP, NPSH_MAP, PUMP_RESULTS_MAP, MAX_SUCTION_MAP, MCF_MAP,
    MAX_DISCHARGE_MAP, MAX_DISCHARGE_OPTIONS_MAP,
)

# camelCase record key → snake_case API key
API_FIELD_MAP: dict[str, str] = {}
for _table in _DIRECT_MAPS:
    for _camel, _snake in _table:
        API_FIELD_MAP.setdefault(_camel, _snake)
RECORD_FIELD_MAP: dict[str, str] = {snake: camel for camel, snake in API_FIELD_MAP.items()}

# Text columns default to these when the record has no value
_TEXT_DEFAULTS = {
    "revision": DEFAULT_REVISION,
    "destinationDescription": DEFAULT_DESTINATION_DESCRIPTION,
}
# Text columns that are sent as null rather than "" when empty
_NULLABLE_TEXT = {"typeOfMotor", "api610ToleranceUsed"}

# Keys already covered by their own payload block, excluded from leftover grouping
_RESULT_KEYS = {camel for camel, _ in PUMP_RESULTS_MAP}
_MAX_SUCTION_KEYS = {camel for camel, _ in MAX_SUCTION_MAP}
_MCF_KEYS = {camel for camel, _ in MCF_MAP}
_GROUPED_SNAKE_KEYS = {
    snake
    for table in (PROJECT_INFO_MAP, DISCHARGE_PRESSURE_MAP, CONTROL_VALVE_MAP,
                  SUCTION_PRESSURE_MAP, POWER_CONSUMPTION_MAP, NPSH_MAP)
    for _, snake in table
}


def api_key_for(name: str) -> str:
    """Resolve a record key or API key to the API (snake_case) key."""
    if name in API_FIELD_MAP:
        return API_FIELD_MAP[name]
    return name if name in RECORD_FIELD_MAP else to_snake_case(name)


def record_key_for(name: str) -> str:
    """Resolve an API key or record key to the record (camelCase) key."""
    if name in RECORD_FIELD_MAP:
        return RECORD_FIELD_MAP[name]
    return name


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _number(value: Any) -> float | None:
    if _is_empty(value):
        return None
    from core.hydraulics import parse_number

    parsed = parse_number(value)
    return parsed.value if parsed.ok else None


def _block(record: dict, table: tuple) -> dict:
    out = {}
    for camel, snake in table:
        spec = FIELDS.get(camel)
        value = record.get(camel)
        if spec is not None and spec.type == "number":
            out[snake] = _number(value)
        elif camel in _NULLABLE_TEXT:
            out[snake] = None if _is_empty(value) else value
        else:
            out[snake] = _TEXT_DEFAULTS.get(camel, "") if _is_empty(value) else value
    return out


def _triplet(prefix: str, value: float | None, keys=("max", "normal", "min")) -> dict:
    return {f"{prefix}_{k}": value for k in keys}


def _section_for_leftover(key: str) -> str:
    """Keyword routing for record keys that have no dedicated column."""
    if any(word in key for word in ("cv", "density", "frictional", "dynamic", "rangeability")):
        return "control_valve_delta_p"
    if any(word in key for word in ("suction", "source", "inline", "elm")):
        return "suction_pressure_calculations"
    if any(word in key for word in ("hydraulic", "pump", "break", "motor", "power", "efficiency", "type")):
        return "power_consumption_per_pump"
    if ("npsh" in key or "vapor" in key
            or ("suction" in key and "pressure" in key and "npsh" in key)
            or ("safety" in key and "margin" in key)):
        return "npsh_availability"
    if any(word in key for word in ("note", "requirement", "standard")):
        return "general_notes"
    return "general_data"


def to_api_payload(record: dict[str, Any], status: str | None = None) -> dict[str, Any]:
    """Map an engineering record to the datasheet backend's payload."""
    project_info = _block(record, PROJECT_INFO_MAP)
    discharge = _block(record, DISCHARGE_PRESSURE_MAP)
    control_valve = _block(record, CONTROL_VALVE_MAP)
    suction = _block(record, SUCTION_PRESSURE_MAP)
    power = _block(record, POWER_CONSUMPTION_MAP)
    npsh = _block(record, NPSH_MAP)

    hp = _number(record.get("hp"))
    vapor = _number(record.get("vaporPressure"))
    density = _number(record.get("density"))
    viscosity = _number(record.get("fluidViscosityAtTemp"))
    temperature = _number(record.get("temperature"))
    power_consumption = _number(record.get("powerConsumption"))
    absorbed = round(power_consumption, 2) if power_consumption is not None else None

    liquid = {"liquid_type": None if _is_empty(record.get("service")) else record.get("service")}
    liquid.update(_triplet("vapor_pressure", vapor, ("max", "min")))
    liquid.update(_triplet("density", density, ("max", "min")))
    liquid.update(_triplet("viscosity", viscosity, ("max", "min")))
    liquid.update(_triplet("temperature", temperature, ("max", "min")))

    operating = {
        f"flow_rate_{k}": (hp * factor if hp is not None else None)
        for k, factor in FLOW_RATE_PER_HP.items()
    }
    operating.update(_triplet("suction_pressure", _number(record.get("totalSuctionPressure"))))
    operating.update(_triplet("discharge_pressure", _number(record.get("totalDischargePressure"))))
    operating.update(_triplet("differential_pressure", _number(record.get("differentialPressure"))))
    operating.update(_triplet("differential_head", _number(record.get("differentialHead"))))

    npsh_template = {
        "npsh_available_max": _number(record.get("npsha")),
        "npsh_available_min": _number(record.get("npsha")),
        "npsh_required": _number(record.get("npshaResult")),
    }

    performance = {}
    performance.update(_triplet("pump_efficiency", _number(record.get("pumpEfficiency"))))
    performance.update(_triplet("bhp", _number(record.get("breakHorsePower"))))
    performance.update(_triplet("absorbed_power", absorbed))

    driver = {
        "driver_type": None if _is_empty(record.get("typeOfMotor")) else record.get("typeOfMotor"),
        "motor_voltage": None,
        "motor_speed": None,
    }
    construction = dict.fromkeys(("casing", "impeller", "shaft", "bearings", "mechanical_seal"))
    project_extended = dict.fromkeys(("company_name", "site", "unit", "manufacturer", "model"))

    section_data: dict[str, dict] = {
        "general_data": {},
        "control_valve_delta_p": {},
        "suction_pressure_calculations": {},
        "power_consumption_per_pump": {},
        "npsh_availability": {},
        "general_notes": {},
    }
    for key, value in record.items():
        if to_snake_case(key) in _GROUPED_SNAKE_KEYS:
            continue
        if key in _RESULT_KEYS or key in _MAX_SUCTION_KEYS or key in _MCF_KEYS:
            continue
        section_data[_section_for_leftover(key)][key] = value

    payload: dict[str, Any] = {}
    for block in (
        project_info, project_extended, liquid, operating, npsh_template, performance,
        driver, construction, discharge, control_valve, suction, power, npsh,
        _block(record, PUMP_RESULTS_MAP), _block(record, MAX_SUCTION_MAP), _block(record, MCF_MAP),
        _block(record, MAX_DISCHARGE_MAP), _block(record, MAX_DISCHARGE_OPTIONS_MAP), section_data,
    ):
        payload.update(block)

    if status is not None:
        payload["status"] = status
    return payload


def record_from_api(payload: dict[str, Any]) -> dict[str, Any]:
    """Rebuild an engineering record from a stored backend payload.

    Only the directly mapped columns come back; template triplets and section
    dicts are derived data.
    """
    record: dict[str, Any] = {}
    for snake, camel in RECORD_FIELD_MAP.items():
        if snake not in payload or payload[snake] is None:
            continue
        value = payload[snake]
        if camel in CALCULATED_FIELDS:
            value = _format_stored(camel, value)
        record[camel] = value
    return record


def _format_stored(name: str, value: Any) -> Any:
    from core.hydraulics import format_value, parse_number

    parsed = parse_number(value)
    if not parsed.ok:
        return value
    return format_value(parsed.value, precision_of(name))
