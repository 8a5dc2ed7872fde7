from dataclasses import dataclass, field
from typing import Dict, Optional

# Fixed timestamp format of every datetime cell and sampling date
DATE_FORMAT = "%d.%m.%Y %H:%M"
DATE_FORMAT_HUMAN = "dd.mm.yyyy HH:MM"

# Environmental variables measured at each position
ENV_VARIABLES = ("AT", "ST", "SM")

ENV_VARIABLE_LABELS = {
    "AT": "Air Temperature [°C]",
    "ST": "Soil Temperature [°C]",
    "SM": "Soil Moisture [m²/m²]",
}
GENERIC_ENV_LABEL = "Environmental variable"

# Meteorological seasons by calendar month
SEASON_MONTHS = {
    "winter": (12, 1, 2),
    "spring": (3, 4, 5),
    "summer": (6, 7, 8),
    "autumn": (9, 10, 11),
    "all": tuple(range(1, 13)),
}
SEASONS = tuple(SEASON_MONTHS.keys())

# Study regions; positions carry an "E" or "W" marker in their name
REGIONS = ("east", "west")
REGION_MARKERS = {"E": "east", "W": "west"}

BINNING_POLICIES = ("range", "threshold")
SR_METHODS = ("target_projection", "weights")

DEFAULT_DATE_COL = "datetime"
DEFAULT_ID_COL = "OTU_ID"
ENV_VAR_COL = "env_var"
POSITION_COL = "position"
VALUES_COL = "values"

DEFAULT_N_FOLDS = 10
DEFAULT_N_PERMUTATIONS = 1000
DEFAULT_SUBSAMPLE_FRACTION = 0.8
DEFAULT_MAX_COMPONENTS = 3
DEFAULT_SIGNIFICANCE = 0.1
DEFAULT_SMOOTHING_SPAN = 0.3
DEFAULT_PERMUTATION_BATCH = 100
NEAR_ZERO_VARIANCE = 1e-6

RESULT_COLUMNS = [
    "sel_ratio", "p_val", "significance", "x",
    "sel_ratio_smooth", "explained_var", "explained_var_smooth",
    "explained_var_smooth_sig",
]

# Random forest side analysis
RF_GROUPINGS = ("month", "year", "all")
RF_PARAMS = {"n_estimators": 100, "max_depth": 10, "max_features": 3}
MONTH_ABBREVIATIONS = {
    1: "Jan", 2: "Feb", 3: "Mar", 4: "Apr", 5: "May", 6: "Jun",
    7: "Jul", 8: "Aug", 9: "Sep", 10: "Oct", 11: "Nov", 12: "Dec",
}

# Plot colours for non-significant / significant bins
PALETTE_SIGNIFICANCE = {False: "#bdbdbd", True: "#d95f02"}
MAIN_COLOUR = "#1b9e77"


@dataclass
class SelectivityConfig:
    """
    Parameters of one selectivity-ratio run (one OTU, one variable, one season).

    Either `span` (hours before the sampling date) or an explicit
    `start_date` bounds the window. `end_date` defaults to the sampling date
    of each region.
    """
    env_var: str
    sampling_dates: Dict[str, str]
    span: float = 30 * 24
    step: float = 1.0
    season: str = "all"
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    binning: str = "range"
    n_folds: int = DEFAULT_N_FOLDS
    n_permutations: int = DEFAULT_N_PERMUTATIONS
    subsample_fraction: float = DEFAULT_SUBSAMPLE_FRACTION
    n_components: Optional[int] = None
    method: str = "target_projection"
    smoothing_span: float = DEFAULT_SMOOTHING_SPAN
    alpha: float = DEFAULT_SIGNIFICANCE
    normalize: bool = True
    n_jobs: int = 1
    max_seconds: Optional[float] = None
    random_state: Optional[int] = 42
    date_col: str = DEFAULT_DATE_COL
    id_col: str = DEFAULT_ID_COL
    regions: Optional[Dict[str, str]] = field(default=None)

    def __post_init__(self):
        if self.env_var not in ENV_VARIABLES:
            raise ValueError(f"env_var must be one of {ENV_VARIABLES}, got {self.env_var!r}")
        if self.season not in SEASON_MONTHS:
            raise ValueError(f"season must be one of {SEASONS}, got {self.season!r}")
        if self.binning not in BINNING_POLICIES:
            raise ValueError(f"binning must be one of {BINNING_POLICIES}, got {self.binning!r}")
        if self.method not in SR_METHODS:
            raise ValueError(f"method must be one of {SR_METHODS}, got {self.method!r}")
        missing = [r for r in REGIONS if r not in self.sampling_dates]
        if missing:
            raise ValueError(f"sampling_dates lacks an entry for region(s) {missing}")
        if self.span <= 0:
            raise ValueError(f"span must be positive (hours), got {self.span}")
        if self.step <= 0:
            raise ValueError(f"step must be positive, got {self.step}")
        if not 0 < self.subsample_fraction <= 1:
            raise ValueError(f"subsample_fraction must lie in (0, 1], got {self.subsample_fraction}")
        if not 0 < self.smoothing_span <= 1:
            raise ValueError(f"smoothing_span must lie in (0, 1], got {self.smoothing_span}")
        if not 0 < self.alpha < 1:
            raise ValueError(f"alpha must lie in (0, 1), got {self.alpha}")
        if self.n_folds < 1:
            raise ValueError(f"n_folds must be >= 1, got {self.n_folds}")
        if self.n_permutations < 1:
            raise ValueError(f"n_permutations must be >= 1, got {self.n_permutations}")
        if self.n_components is not None and self.n_components < 1:
            raise ValueError(f"n_components must be >= 1, got {self.n_components}")
