"""
Pumpsheet — Hydraulic Recalculation Engine
===========================================
Deterministic derivation of every calculated field on the pump data sheet.
Each edit re-runs only the formula groups downstream of the changed field,
in a fixed topological order, so the record is internally consistent before
it is displayed or persisted.

Pure module: no I/O, no hidden state. Bad numeric input never raises; it
counts as zero inside the formulas and is reported separately by
validate_numeric_inputs() for the caller to display.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from core import config
from core.fields import FIELDS, INPUT_NUMERIC_FIELDS, precision_of
from core.reference_data import (
    BAR_PER_METRE_WATER,
    DYNAMIC_LOSS_FRACTION,
    METRE_PER_BAR_HEAD,
    METRE_PER_BAR_NPSH,
    WATER_DENSITY_KG_M3,
)

Record = dict[str, Any]


# ---------------------------------------------------------------------------
# Parsing and formatting
# ---------------------------------------------------------------------------

# Leading decimal literal; anything after it (units, stray text) is ignored.
_LEADING_NUMBER = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


@dataclass(frozen=True)
class NumberParse:
    """Outcome of parsing one field value."""

    value: float
    error: Optional[str] = None
    present: bool = True

    @property
    def ok(self) -> bool:
        return self.present and self.error is None

    def or_zero(self) -> float:
        return self.value if self.ok else 0.0


_ABSENT = NumberParse(0.0, present=False)


def parse_number(raw: Any) -> NumberParse:
    """Parse a field value the way a user typed it.

    "12.5", "12.5 bar" and 12.5 all give 12.5. Empty values are absent;
    text with no leading number, text containing a comma, booleans and
    non-finite floats are errors.
    """
    if raw is None:
        return _ABSENT
    if isinstance(raw, bool):
        return NumberParse(0.0, error="not a number")
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            return NumberParse(0.0, error="not a finite number")
        return NumberParse(float(raw))

    text = str(raw)
    if text.strip() == "":
        return _ABSENT
    # "1,5" and "1,250" are ambiguous
    if "," in text:
        return NumberParse(0.0, error=f"'{raw}' contains a comma; use '.' for decimals and no thousands separator")
    match = _LEADING_NUMBER.match(text)
    if not match:
        return NumberParse(0.0, error=f"'{raw}' is not a number")
    value = float(match.group(1))
    if not math.isfinite(value):
        return NumberParse(0.0, error="not a finite number")
    return NumberParse(value)


def num(record: Record, name: str, default: float = 0.0) -> float:
    """Numeric value of a field, or `default` when absent or unparsable."""
    parsed = parse_number(record.get(name))
    return parsed.value if parsed.ok else default


def format_value(value: float, precision: int) -> str:
    text = f"{value:.{precision}f}"
    # "-0.000" → "0.000"
    if float(text) == 0:
        text = f"{0.0:.{precision}f}"
    return text


def validate_numeric_inputs(record: Record) -> dict[str, str]:
    """Unparsable values in user-editable numeric fields, keyed by field name."""
    problems: dict[str, str] = {}
    for name in sorted(INPUT_NUMERIC_FIELDS):
        parsed = parse_number(record.get(name))
        if parsed.present and parsed.error:
            problems[name] = f"{FIELDS[name].label}: {parsed.error}"
    return problems


# ---------------------------------------------------------------------------
# Fluid-dependent conversion factors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HeadFactors:
    specific_gravity: float
    bar_per_m: float        # static head (m) → pressure (bar)
    m_per_bar_head: float   # differential pressure (bar) → head (m)
    m_per_bar_npsh: float   # NPSH pressure margin (bar) → head (m)


def head_factors(record: Record, density_correction: bool | None = None) -> HeadFactors:
    """Conversion factors for the record's liquid.

    Uses the `density` field (kg/m³) when correction is on and a positive
    density is present; otherwise water, which gives the standard data-sheet
    constants 0.0981 / 10.197 / 10.2 exactly.
    """
    if density_correction is None:
        density_correction = config.DENSITY_CORRECTION
    density = num(record, "density")
    sg = density / WATER_DENSITY_KG_M3 if density_correction and density > 0 else 1.0
    if sg == 1.0:
        return HeadFactors(1.0, BAR_PER_METRE_WATER, METRE_PER_BAR_HEAD, METRE_PER_BAR_NPSH)
    return HeadFactors(
        specific_gravity=sg,
        bar_per_m=BAR_PER_METRE_WATER * sg,
        m_per_bar_head=METRE_PER_BAR_HEAD / sg,
        m_per_bar_npsh=METRE_PER_BAR_NPSH / sg,
    )


# ---------------------------------------------------------------------------
# Formula groups
# ---------------------------------------------------------------------------

# A group returns raw float outputs, or None when a guard skips it.
GroupFn = Callable[[Record, HeadFactors], Optional[dict[str, float]]]


@dataclass(frozen=True)
class FormulaGroup:
    name: str
    inputs: frozenset
    outputs: tuple
    compute: GroupFn


def _cv_ratio(r: Record, _f: HeadFactors):
    cv_min = num(r, "cvMin")
    if cv_min == 0:
        return None
    return {"cvRatio": num(r, "cvMax") / cv_min}


def _dynamic_losses(r: Record, _f: HeadFactors):
    return {"dynamicLosses30Percent": num(r, "totalFrictionalLosses") * DYNAMIC_LOSS_FRACTION}


def _suction_losses(r: Record, _f: HeadFactors):
    return {"totalSuctionLosses": (
        num(r, "inlineInstLosses") + num(r, "lineFricLosses")
        + num(r, "controlValveSuction") + num(r, "miscItemsSuction")
    )}


def _total_suction_pressure(r: Record, _f: HeadFactors):
    return {"totalSuctionPressure": (
        num(r, "sourceOpPressure") + num(r, "suctionELm") - num(r, "totalSuctionLosses")
    )}


def _break_horse_power(r: Record, _f: HeadFactors):
    efficiency = num(r, "pumpEfficiency")
    if efficiency <= 0:
        return None
    return {"breakHorsePower": num(r, "hydraulicPower") / (efficiency / 100)}


def _power_consumption(r: Record, _f: HeadFactors):
    efficiency = num(r, "motorEfficiency")
    if efficiency <= 0:
        return None
    return {"powerConsumption": num(r, "breakHorsePower") / (efficiency / 100)}


def _npsha(r: Record, f: HeadFactors):
    return {"npsha": (num(r, "suctionPressureNpsh") - num(r, "vaporPressure")) * f.m_per_bar_npsh}


def _npsha_margin(r: Record, _f: HeadFactors):
    return {"npshaWithSafetyMargin": num(r, "npsha") - num(r, "safetyMarginNpsha")}


DISCHARGE_COMPONENTS = (
    "destinationPressure", "destinationElevation", "lineFrictionLoss", "flowMeterDelP",
    "otherLosses", "controlValve", "miscItem", "contingency",
)


def _total_discharge_pressure(r: Record, _f: HeadFactors):
    return {"totalDischargePressure": sum(num(r, name) for name in DISCHARGE_COMPONENTS)}


def _pump_results(r: Record, f: HeadFactors):
    # Each step consumes the previous step's stored (rounded) value.
    stage = dict(r)

    def settle(name: str, value: float) -> float:
        stage[name] = format_value(value, precision_of(name))
        return num(stage, name)

    discharge = settle("dischargePressure", num(r, "totalDischargePressure"))
    suction = settle("suctionPressureResult", max(
        0.0,
        num(r, "sourceOpPressure") - num(r, "suctionELm") * f.bar_per_m - num(r, "totalSuctionLosses"),
    ))
    differential = settle("differentialPressure", discharge - suction)
    return {
        "dischargePressure": discharge,
        "suctionPressureResult": suction,
        "differentialPressure": differential,
        "differentialHead": differential * f.m_per_bar_head,
        "npshaResult": num(r, "npsha"),
    }


def _max_suction_pressure(r: Record, f: HeadFactors):
    return {"maxSuctionPressure": max(
        0.0,
        num(r, "suctionVesselMaxOpPressure")
        + num(r, "tlToHhllM") * f.bar_per_m
        - num(r, "suctionElM") * f.bar_per_m,
    )}


def _mcf_cv_pressure_drop(r: Record, _f: HeadFactors):
    density = num(r, "fluidDensityMcf") or WATER_DENSITY_KG_M3
    elevation_head = num(r, "elDestinationPumpCl") * (density / WATER_DENSITY_KG_M3) * BAR_PER_METRE_WATER
    return {"mcfCvPressureDrop": max(
        0.0,
        num(r, "pumpDischargePressureMinFlow")
        - num(r, "destinationPressure")
        - elevation_head
        - num(r, "mcfLineFrictionLosses")
        - num(r, "flowMeterLosses")
        - num(r, "miscPressureDropMcf"),
    )}


def _shut_off_differential(r: Record, _f: HeadFactors):
    return {"shutOffDifferentialPressure": (
        num(r, "differentialPressure")
        * num(r, "apiToleranceFactor", default=1.0)
        * num(r, "shutOffPressureFactor", default=1.0)
    )}


def _max_discharge_options(r: Record, _f: HeadFactors):
    max_suction = num(r, "maxSuctionPressure")
    return {
        "maximumDischargePressureOption1": max_suction + num(r, "differentialPressure"),
        "maximumDischargePressureOption2": max_suction + num(r, "shutOffDifferentialPressure"),
    }


def _group(name: str, inputs, outputs, compute: GroupFn) -> FormulaGroup:
    return FormulaGroup(name, frozenset(inputs), tuple(outputs), compute)


# Topological order: every group appears after the groups that feed it.
FORMULA_GROUPS: tuple[FormulaGroup, ...] = (
    _group("cv_ratio", ("cvMax", "cvMin"), ("cvRatio",), _cv_ratio),
    _group("dynamic_losses", ("totalFrictionalLosses",), ("dynamicLosses30Percent",), _dynamic_losses),
    _group("suction_losses",
           ("inlineInstLosses", "lineFricLosses", "controlValveSuction", "miscItemsSuction"),
           ("totalSuctionLosses",), _suction_losses),
    _group("total_suction_pressure", ("sourceOpPressure", "suctionELm", "totalSuctionLosses"),
           ("totalSuctionPressure",), _total_suction_pressure),
    _group("break_horse_power", ("hydraulicPower", "pumpEfficiency"), ("breakHorsePower",), _break_horse_power),
    _group("power_consumption", ("breakHorsePower", "motorEfficiency", "motorRating"),
           ("powerConsumption",), _power_consumption),
    _group("npsha", ("suctionPressureNpsh", "vaporPressure", "density"), ("npsha",), _npsha),
    _group("npsha_margin", ("npsha", "safetyMarginNpsha"), ("npshaWithSafetyMargin",), _npsha_margin),
    _group("total_discharge_pressure", DISCHARGE_COMPONENTS, ("totalDischargePressure",),
           _total_discharge_pressure),
    _group("pump_results",
           ("totalDischargePressure", "sourceOpPressure", "suctionELm", "totalSuctionLosses", "npsha", "density"),
           ("dischargePressure", "suctionPressureResult", "differentialPressure", "differentialHead", "npshaResult"),
           _pump_results),
    _group("max_suction_pressure", ("suctionVesselMaxOpPressure", "suctionElM", "tlToHhllM", "density"),
           ("maxSuctionPressure",), _max_suction_pressure),
    _group("mcf_cv_pressure_drop",
           ("pumpDischargePressureMinFlow", "destinationPressure", "elDestinationPumpCl",
            "mcfLineFrictionLosses", "flowMeterLosses", "miscPressureDropMcf", "fluidDensityMcf"),
           ("mcfCvPressureDrop",), _mcf_cv_pressure_drop),
    _group("shut_off_differential", ("differentialPressure", "apiToleranceFactor", "shutOffPressureFactor"),
           ("shutOffDifferentialPressure",), _shut_off_differential),
    _group("max_discharge_options", ("maxSuctionPressure", "differentialPressure", "shutOffDifferentialPressure"),
           ("maximumDischargePressureOption1", "maximumDischargePressureOption2"), _max_discharge_options),
)

ALL_INPUTS = frozenset().union(*(g.inputs for g in FORMULA_GROUPS))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def recalculate(
    record: Record,
    changed_field: str | None = None,
    density_correction: bool | None = None,
) -> Record:
    """Recompute every calculated field downstream of `changed_field`.

    Returns a new record; the argument is not modified. With
    `changed_field=None` every group runs (full recompute). A group whose
    guard trips (zero divisor) leaves its outputs at their previous values.
    """
    result = dict(record)
    dirty = set(ALL_INPUTS) if changed_field is None else {changed_field}
    factors = head_factors(result, density_correction)

    for group in FORMULA_GROUPS:
        if not (group.inputs & dirty):
            continue
        outputs = group.compute(result, factors)
        if outputs is None:
            continue
        for name in group.outputs:
            result[name] = format_value(outputs[name], precision_of(name))
        dirty.update(group.outputs)

    return result


def recalculate_all(record: Record, density_correction: bool | None = None) -> Record:
    return recalculate(record, None, density_correction)


def dependents_of(field_name: str) -> list[str]:
    """Calculated fields that change, directly or transitively, when `field_name` changes."""
    dirty = {field_name}
    affected: list[str] = []
    for group in FORMULA_GROUPS:
        if group.inputs & dirty:
            dirty.update(group.outputs)
            affected.extend(o for o in group.outputs if o not in affected)
    return affected


def formula_groups() -> list[dict]:
    return [
        {"name": g.name, "inputs": sorted(g.inputs), "outputs": list(g.outputs)}
        for g in FORMULA_GROUPS
    ]
