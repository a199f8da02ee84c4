"""
Simulation configuration.

Centralizes the tunable constants of the turn loop. Values can be overridden
from a JSON file (content/SimConfig.json by default); anything not given keeps
its default.
"""
from __future__ import annotations
import json
from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from errors import ConfigError

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "content" / "SimConfig.json"


class SimConfig(BaseModel):
    # Universe scale ----------------------------------------------------------
    # Units of time in a single market day ("shifts" or "hours").
    time_units_per_day: float = Field(24.0, gt=0)
    days_per_turn: float = Field(1.0, gt=0)
    # Id of the Time good pops generate every turn
    time_good_id: str = "time"

    # Production --------------------------------------------------------------
    # Fixed time charge when a firm changes which process it is running
    friction_cost: float = Field(0.1, ge=0)
    # Output lost per omitted excludable input, applied multiplicatively
    excluded_input_penalty: float = Field(0.25, ge=0, le=1)

    # Market ------------------------------------------------------------------
    # Weight of this turn's VWAP in the AMV update
    amv_smoothing: Decimal = Field(Decimal("0.25"), gt=0, le=1)
    # How hard unmet demand / unsold supply pushes AMV on the following turn
    pressure_rate: Decimal = Field(Decimal("0.05"), ge=0, le=1)
    # Premium the top-ranked desire of a pop is willing to pay over AMV
    bid_markup: Decimal = Field(Decimal("0.5"), ge=0)
    # Seller reservation price as a multiple of AMV
    ask_markup: Decimal = Field(Decimal("1"), gt=0)
    price_floor: Decimal = Field(Decimal("0.01"), gt=0)
    # Weight of the latest turn in the salability average
    salability_smoothing: Decimal = Field(Decimal("0.25"), gt=0, le=1)

    # Desires -----------------------------------------------------------------
    # Lowest effective weight a desire can step to. None leaves weights unclamped.
    weight_floor: Optional[float] = None
    # Want satisfaction below this is dropped at turn end
    min_want_threshold: float = Field(0.001, ge=0)

    # Randomness --------------------------------------------------------------
    seed: int = 0

    @field_validator("amv_smoothing", "pressure_rate", "bid_markup", "ask_markup",
                     "price_floor", "salability_smoothing", mode="before")
    @classmethod
    def _decimize(cls, v):
        return Decimal(str(v))

    @property
    def time_budget(self) -> float:
        return self.time_units_per_day * self.days_per_turn


def load_config(path: Optional[Path] = None) -> SimConfig:
    """Read a SimConfig from JSON, falling back to defaults if the file is absent."""
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not path.exists():
        return SimConfig()
    try:
        return SimConfig.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (ValidationError, json.JSONDecodeError) as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e
