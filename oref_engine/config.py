# oref_engine/config.py
"""
Engine constants. Per-patient settings live on Profile; values here are
properties of the algorithm itself.
"""

# glucose
MIN_VALID_BG = 39.0  # mg/dL, sensor error codes sit below this
MAX_PRED_BG = 401.0
GLUCOSE_FRESHNESS_MINUTES = 9
GLUCOSE_MAX_FUTURE_MINUTES = 5
MAX_INTERVAL_GAP_MINUTES = 15

# prediction grid
STEP_MINUTES = 5
DEVIATION_DECAY_MINUTES = 60
UAM_MAX_HOURS = 3.0
INSULIN_PEAK_MINUTES = 90

# carbs
MAX_CARB_ABSORPTION_RATE = 30  # g/h
ASSUMED_CARB_ABSORPTION_RATE = 20  # g/h
REMAINING_CA_TIME_MIN_HOURS = 3.0
REMAINING_CARBS_CAP = 90  # g
CARBS_REQ_WINDOW_MINUTES = 45
DEVIATION_LOOKBACK_MINUTES = 45

# temp basal / SMB
TEMP_DURATION_MINUTES = 30
MAX_ZERO_TEMP_MINUTES = 120
TEMP_HYSTERESIS_FRACTION = 0.2
MAX_DELTA_BG_FRACTION = 0.2

# autosens
AUTOSENS_LOOKBACK_HOURS = 24
AUTOSENS_MIN_INTERVALS = 12

# temp basal decomposition into virtual doses
TEMP_SEGMENT_MINUTES = 5
