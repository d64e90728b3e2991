# oref_engine/errors.py
"""
Error taxonomy. Library code raises these; the decision entry points catch
OrefError and turn it into an error-tagged DetermineBasalResult.
"""

from __future__ import annotations


class OrefError(Exception):
    kind = "error"
    label = "Error"

    def __init__(self, message: str = "") -> None:
        self.message = message
        super().__init__(f"{self.label}: {message}")


class InvalidProfile(OrefError):
    kind = "invalid_profile"
    label = "Invalid profile"


class InvalidTreatment(OrefError):
    kind = "invalid_treatment"
    label = "Invalid treatment"


class InvalidGlucose(OrefError):
    kind = "invalid_glucose"
    label = "Invalid glucose data"


class CalculationError(OrefError):
    kind = "calculation_error"
    label = "Calculation error"


class MissingData(OrefError):
    kind = "missing_data"
    label = "Missing required data"


class InvalidTimestamp(OrefError):
    kind = "invalid_timestamp"
    label = "Invalid timestamp"


class OutOfRange(OrefError):
    kind = "out_of_range"
    label = "Value out of range"

    def __init__(self, field: str, value: float, min: float, max: float) -> None:
        self.field = field
        self.value = value
        self.min = min
        self.max = max
        super().__init__(f"{field} = {value}, expected {min}..{max}")
