"""Internal constants shared across the library."""

DEFAULT_TOPIC_PREFIX = "serverboy"

# ------------------------------------------------------------------
# Screen geometry of the default engine (160x144 RGBA8888)
# ------------------------------------------------------------------

SCREEN_WIDTH = 160
SCREEN_HEIGHT = 144
BYTES_PER_PIXEL = 4
PIXEL_FORMAT = "rgba8888"

# ------------------------------------------------------------------
# Audio
# ------------------------------------------------------------------

ENGINE_SAMPLE_RATE = 32768
OUTPUT_SAMPLE_RATE = 44100

# ------------------------------------------------------------------
# Broadcast pacing
# ------------------------------------------------------------------

TICK_INTERVAL_S = 0.005
EMIT_SKIP_FACTOR = 2
INPUT_REPEAT = 3

# ------------------------------------------------------------------
# Input tally
# ------------------------------------------------------------------

TALLY_SIZE = 8
TELEMETRY_INTERVAL_S = 10.0
DECISION_INTERVAL_S = 1.0
