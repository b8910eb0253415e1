"""Engine configuration.

One configuration object for the whole matching engine: rounding policy,
oversell handling, replay verification and logging.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lotledger.system.log_system import LoggingConfig

OversellPolicy = Literal["reject", "partial"]


class EngineConfig(BaseModel):
    """
    Configuration for the matching engine.

    Attributes:
        cost_precision: Fractional digits for lot unit cost and fee slices
        cost_precision_by_asset: Asset-specific precision (minimum tradable unit)
        oversell_policy: 'reject' fails a sell exceeding open lots,
            'partial' records it with an unmatched remainder
        lot_method: Lot matching method ("fifo" only)
        verify_replay: Check earlier matches are unchanged after a replay
        logging: Logging configuration

    Example:
        >>> config = EngineConfig(
        ...     cost_precision=4,
        ...     cost_precision_by_asset={"BTC": 8},
        ... )
        >>> config.precision_for("BTC")
        8
    """

    cost_precision: int = Field(default=8, description="Default fractional digits for unit cost rounding")
    cost_precision_by_asset: dict[str, int] = Field(default_factory=dict)
    oversell_policy: OversellPolicy = "reject"
    lot_method: str = "fifo"
    verify_replay: bool = True
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("cost_precision")
    @classmethod
    def validate_cost_precision(cls, v: int) -> int:
        """Validate precision is within a sane range."""
        if not 0 <= v <= 28:
            raise ValueError(f"cost_precision must be between 0 and 28, got {v}")
        return v

    @field_validator("cost_precision_by_asset")
    @classmethod
    def validate_precision_by_asset(cls, v: dict[str, int]) -> dict[str, int]:
        """Validate every per-asset precision."""
        for asset_id, digits in v.items():
            if not 0 <= digits <= 28:
                raise ValueError(f"Precision for {asset_id} must be between 0 and 28, got {digits}")
        return v

    @field_validator("lot_method")
    @classmethod
    def validate_lot_method(cls, v: str) -> str:
        """Validate lot method."""
        if v != "fifo":
            raise ValueError(f"Only 'fifo' lot matching is supported, got '{v}'")
        return v

    def precision_for(self, asset_id: str) -> int:
        """Rounding digits for an asset (falls back to cost_precision)."""
        return self.cost_precision_by_asset.get(asset_id, self.cost_precision)

    @property
    def allow_partial(self) -> bool:
        return self.oversell_policy == "partial"

    @classmethod
    def from_yaml(cls, path: Path) -> "EngineConfig":
        """Load configuration from the 'engine' section of a YAML file."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data.get("engine", {}))

    model_config = ConfigDict(frozen=True)
