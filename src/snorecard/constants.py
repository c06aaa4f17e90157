"""
Constants for CPAP data-card decoding and therapy aggregation.

Chunk layout values follow the Philips System One / DreamStation card format.
"""

from pathlib import Path

# ============================================================================
# Chunk Container Format
# ============================================================================


class ChunkFormatConstants:
    """Byte layout and sanity limits for chunk container files."""

    COMMON_HEADER_SIZE = 15
    MIN_CHUNK_SIZE = 16
    SUPPORTED_VERSIONS = (2, 3)

    HEADER_TYPE_EVENT = 0x00
    HEADER_TYPE_INTERVAL = 0x01

    EXT_SETTINGS = 0x01
    EXT_EVENTS = 0x02
    EXT_WAVEFORM = 0x05

    # Only the DreamStation CPAP family is decoded at event level
    EVENT_FAMILY = 0x00
    EVENT_FAMILY_VERSION = 0x06

    # Event codes that carry no 2-byte delta-time prefix
    NO_DELTA_CODES = frozenset({0x12})

    RESYNC_WINDOW_BYTES = 24
    MAX_INTERVAL_SECONDS = 24 * 3600

    WAVEFORM_DESCRIPTOR_SIZE_V2 = 3
    WAVEFORM_DESCRIPTOR_SIZE_V3 = 4
    WAVEFORM_FIXED_HEADER_OFFSET = 19
    CRC32_SIZE = 4

    FLOW_SCALE_LPM_PER_COUNT = 1.095

    # Settings scan: half-cmH2O quantised pressures in 4.0..20.0 cmH2O
    SETTINGS_HALF_CM_MIN = 8
    SETTINGS_HALF_CM_MAX = 40

    # Flex pressure average in 0.1 cmH2O, 4.0..25.0 cmH2O
    FLEX_TENTH_MIN = 40
    FLEX_TENTH_MAX = 250

    BASELINE_EPAP_OFFSET = 2.0

    # File extensions that hold chunk containers
    CHUNK_EXTENSIONS = (".000", ".001", ".002", ".003", ".004", ".005")


class EventCode:
    """Event codes inside family 0 / version 6 event chunks."""

    PRESSURE_SET = 0x01
    BILEVEL_PRESSURE_SET = 0x02
    PRESSURE_PULSE = 0x04
    RERA = 0x05
    OBSTRUCTIVE_APNEA = 0x06
    CLEAR_AIRWAY = 0x07
    HYPOPNEA = 0x0A
    HYPOPNEA_VARIANT = 0x0B
    FLOW_LIMITATION = 0x0C
    VIBRATORY_SNORE = 0x0D
    VARIABLE_BREATHING = 0x0E
    PERIODIC_BREATHING = 0x0F
    LARGE_LEAK = 0x10
    STATISTICS = 0x11
    SNORES_AT_PRESSURE = 0x12
    HYPOPNEA_ALT_1 = 0x14
    HYPOPNEA_ALT_2 = 0x15


# ============================================================================
# EDF Format
# ============================================================================


class EDFConstants:
    """Fixed EDF header layout."""

    FIXED_HEADER_SIZE = 256
    SIGNAL_HEADER_SIZE = 256
    MIN_HEADER_BYTES = 256
    MAX_HEADER_BYTES = 16384
    MAX_RECORDS = 1_000_000
    TWO_DIGIT_YEAR_PIVOT = 79
    FLEX_ON_THRESHOLD = 0.5


# ============================================================================
# Legacy Frame Streams
# ============================================================================


class FrameConstants:
    """Length-prefixed legacy frame stream limits."""

    MAX_FRAMES = 200_000
    MAX_SUBRECORDS = 50_000
    SUBRECORD_HEADER_SIZE = 4
    UNKNOWN_RECORD_TYPE = 0xFF
    MAX_SERIES_PERIOD_SECONDS = 60
    MAX_SERIES_COUNT = 6000
    # 2000-01-01 .. 2100-01-01
    MIN_UNIX_SECONDS = 946684800
    MAX_UNIX_SECONDS = 4102444800


# ============================================================================
# Session Merging
# ============================================================================

SESSION_KEY_PATTERN = r"([0-9A-Fa-f]{8})\.(?:000|001|002|005)\b"


# ============================================================================
# Breath Segmentation & Flow Limitation
# ============================================================================


class BreathSegmentationConstants:
    """Breath segmentation thresholds for the flow waveform."""

    BASELINE_SUBSAMPLE_TARGET = 5000
    ZERO_EPS = 0.01
    MIN_DEADBAND = 0.05
    DEADBAND_PERCENTILE = 10
    DEADBAND_MULTIPLIER = 1.5
    SMOOTHING_WINDOW = 3

    MIN_BREATH_SECONDS = 1.0
    MAX_BREATH_SECONDS = 12.0
    MIN_INSPIRATION_SECONDS = 0.3

    LEAK_REJECT_FRACTION = 0.5


class FlowLimitationConstants:
    """Inspiratory flattening score and severity bands."""

    MIN_INSPIRATORY_POINTS = 5
    RATIO_FLOOR = 0.55
    RATIO_SPAN = 0.30

    EMA_SHORT_MINUTES = 5
    EMA_LONG_MINUTES = 15

    BAND_MISSING = -1
    BAND_LOW = 0
    BAND_MEDIUM = 1
    BAND_HIGH = 2
    MEDIUM_THRESHOLD = 0.1
    HIGH_THRESHOLD = 0.3


# ============================================================================
# Aggregation
# ============================================================================


class AggregationDefaults:
    """Defaults for the daily aggregator configuration."""

    LEAK_OVER_THRESHOLD = 24.0
    MIN_SAMPLE_SEGMENT_SECONDS = 1
    FLEX_ACTIVE_THRESHOLD = 0.5


class EpisodeConstants:
    """Episode clustering parameters."""

    SNORE_GAP_TOLERANCE_SECONDS = 10
    SNORE_MIN_DURATION_SECONDS = 1
    PEAK_DENSITY_WINDOW_SECONDS = 60

    LEAK_MIN_DURATION_SECONDS = 30
    LEAK_GAP_TOLERANCE_SECONDS = 5

    HIGH_FL_MIN_DURATION_SECONDS = 60
    HIGH_FL_GAP_TOLERANCE_MINUTES = 0


class LeakModelConstants:
    """Lower-envelope leak regression parameters."""

    PRESSURE_BIN_WIDTH = 1.0
    ENVELOPE_PERCENTILE = 20
    MIN_BIN_SAMPLES = 3
    MIN_BINS_FOR_FIT = 2


ROLLING_AHI_WINDOWS = (5, 10, 30)

MINUTES_PER_DAY = 24 * 60
SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
MILLISECONDS_PER_SECOND = 1000

WEIGHTED_MEDIAN = 0.5
WEIGHTED_P95 = 0.95


# ============================================================================
# Waveform Index
# ============================================================================


class WaveformIndexConstants:
    """Multi-resolution min/max pyramid parameters."""

    REDUCTION_FACTOR = 4
    GAP_SNAP_MS = 1500
    DEFAULT_MAX_BUCKETS = 1000


# ============================================================================
# Application Paths
# ============================================================================

APP_DIR = Path.home() / ".snorecard"
DEFAULT_LOG_DIR = APP_DIR / "logs"
DEFAULT_LOG_FILE = "snorecard.log"
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_LOG_BACKUP_COUNT = 5

# Maximum directory depth when scanning a card folder
IMPORT_MAX_SEARCH_DEPTH = 5
