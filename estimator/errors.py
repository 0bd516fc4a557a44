from dataclasses import dataclass, asdict
from typing import Dict, Optional


class EstimatorError(Exception):
    """Base class for every failure the pipeline knows how to report."""


class ConfigurationError(EstimatorError):
    pass


class FetchError(EstimatorError):
    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class ModelOutputError(EstimatorError):
    def __init__(self, message: str, stage: str = ""):
        super().__init__(f"{stage}: {message}" if stage else message)
        self.stage = stage


class DeliveryError(EstimatorError):
    pass


# ---------------- Non-fatal diagnostics ----------------
UNMAPPED_CODE = "unmapped_code"
PRICE_OVERRIDE = "price_override"
TRIP_FEE_MISSING = "trip_fee_missing"
TRIP_FEE_MISMATCH = "trip_fee_mismatch"


@dataclass(frozen=True)
class PricingDiagnostic:
    kind: str
    message: str
    code: Optional[str] = None

    def to_record(self) -> Dict:
        return asdict(self)

    def __str__(self) -> str:
        return self.message
