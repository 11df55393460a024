"""
Centralized configuration constants for the heuristic background removal engine.

Ground rules:
- uint8 RGBA working buffers, uint8 masks (0 = keep, 255 = remove)
- every threshold lives here so callers can override instead of patching code
"""

import os

# ---------------------------------------------------------------------------
# Resource governance
# ---------------------------------------------------------------------------

MAX_SAFE_DIMENSION = 2048
MAX_SAFE_PIXELS = MAX_SAFE_DIMENSION * MAX_SAFE_DIMENSION
MEMORY_LIMIT_BYTES = 100 * 1024 * 1024
MEMORY_PASSES = 3
MAX_INPUT_BYTES = 20 * 1024 * 1024
# Pillow's decompression-bomb error threshold (2x its warning threshold).
MAX_NATIVE_PIXELS = 178_956_970

ALLOWED_INPUT_FORMATS = ("PNG", "JPEG", "WEBP", "BMP", "GIF", "TIFF")
OUTPUT_FORMATS = ("png", "webp")


def _get_int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def get_max_input_bytes() -> int:
    mb = _get_int_env("BG_REMOVAL_MAX_INPUT_MB", MAX_INPUT_BYTES // (1024 * 1024))
    return max(1, mb) * 1024 * 1024


def get_max_pixels() -> int:
    return max(1, _get_int_env("BG_REMOVAL_MAX_PIXELS", MAX_SAFE_PIXELS))


def get_worker_count() -> int:
    return max(1, _get_int_env("BG_REMOVAL_WORKERS", 5))


# ---------------------------------------------------------------------------
# Defaults exposed through ProcessingOptions
# ---------------------------------------------------------------------------

DEFAULT_SENSITIVITY = 25
DEFAULT_QUALITY = 95
DEFAULT_SEED = 0
FEATHER_RADIUS = 15

# Progress checkpoints (percent, label).
PROGRESS_STAGES = {
    "init": (5, "Initializing"),
    "prepare": (15, "Preparing image data"),
    "detect": (25, "Object detection complete"),
    "generate": (45, "Generating background masks"),
    "generated": (55, "Background masks ready"),
    "fuse": (70, "Combining mask results"),
    "refine": (85, "Refining edges"),
    "finalize": (95, "Finalizing output"),
    "done": (100, "Complete"),
}

# ---------------------------------------------------------------------------
# Region detector
# ---------------------------------------------------------------------------

SKIN_SAMPLE_STRIDE = 2
SKIN_TONE_RANGES = (
    ((95, 255), (40, 255), (20, 255)),  # light
    ((60, 200), (30, 150), (15, 100)),  # medium
    ((30, 120), (20, 80), (10, 60)),  # dark
)
SKIN_MIN_SPREAD = 15
SKIN_MIN_RG_DIFF = 15
SKIN_SCORE_DIVISOR = 100.0
SKIN_MIN_SCORE = 0.3
SKIN_CLUSTER_RADIUS = 30
SKIN_CLUSTER_MIN_PIXELS = 20
FACE_MIN_PIXELS = 50
FACE_MIN_CONFIDENCE = 0.5

BODY_WIDTH_FACTOR = 3.0
BODY_HEIGHT_FACTOR = 6.0
BODY_SAMPLE_STRIDE = 3
BODY_MIN_SATURATION = 0.15
BODY_BRIGHTNESS_RANGE = (20, 240)
BODY_MIN_CONFIDENCE = 0.4

HAIR_SEARCH = (-0.3, -0.8, 1.6, 1.2)  # x, y, w, h as fractions of the face box
HAIR_SAMPLE_STRIDE = 2
HAIR_MAX_BRIGHTNESS = 150
HAIR_MAX_SATURATION = 0.7
HAIR_VARIANCE_DIVISOR = 1000.0
HAIR_MIN_TEXTURE = 0.3
HAIR_MIN_PIXELS = 30

CLOTHING_TORSO = (0.1, 0.3, 0.8, 0.6)  # x, y, w, h as fractions of the body box
CLOTHING_SAMPLE_STRIDE = 2
CLOTHING_MIN_SATURATION = 0.2
CLOTHING_BRIGHTNESS_RANGE = (30, 220)
FABRIC_COLOR_DISTANCE = 30
FABRIC_MIN_SCORE = 0.3
CLOTHING_MIN_PIXELS = 50

PRODUCT_MIN_CONFIDENCE = 0.6
PRODUCT_MIN_AREA_FRACTION = 0.005
PRODUCT_UNIFORMITY_DISTANCE = 40
ANIMAL_MIN_CONFIDENCE = 0.5
FUR_MIN_VARIATION = 500
FUR_STRONG_DIFF = 30
FUR_MIN_STRONG = 8
PLANT_MIN_CONFIDENCE = 0.5
PLANT_GREEN_MARGIN = 15
PLANT_MIN_VARIANCE = 100.0
OBJECT_MIN_AREA_FRACTION = 0.01

BACKGROUND_REGION_MIN_PIXELS = 100

# ---------------------------------------------------------------------------
# Mask generators
# ---------------------------------------------------------------------------

EDGE_SCALES = (1, 2, 3)
EDGE_THRESHOLD_BASE = 2.0
EDGE_THRESHOLD_PER_SCALE = 0.5
EDGE_STRENGTH_CUTOFF = 128

KMEANS_CLUSTERS = 8
KMEANS_SAMPLE_STRIDE = 3
KMEANS_MAX_ITER = 20
KMEANS_N_INIT = 3
KMEANS_SPATIAL_WEIGHT = 0.3
KMEANS_SPATIAL_SCALE = 100.0
CLUSTER_SCORE_WEIGHTS = (0.4, 0.3, 0.3)  # edge presence, centre distance, uniformity
CLUSTER_BACKGROUND_SCORE = 0.6
CLUSTER_UNIFORMITY_STRIDE = 5
CLUSTER_UNIFORMITY_DISTANCE = 40
COLOR_THRESHOLD_FACTOR = 3

LBP_UNIFORM_PATTERNS = (0, 255, 15, 240, 51, 204, 85, 170)
LBP_UNIFORM_SCORE = 0.1
TEXTURE_BACKGROUND_SCORE = 0.3

GRADIENT_RADIUS = 2
GRADIENT_BACKGROUND_MAGNITUDE = 20.0

# ---------------------------------------------------------------------------
# Fusion + refinement
# ---------------------------------------------------------------------------

GENERATOR_NAMES = ("edge", "color", "texture", "gradient", "object")
FUSION_WEIGHTS = {
    "edge": 0.25,
    "color": 0.25,
    "texture": 0.15,
    "gradient": 0.15,
    "object": 0.20,
}
FUSION_CONFIDENCE_OFFSET = 0.5

MASK_THRESHOLD = 128
MORPH_KERNEL_SIZE = 3
DETAIL_BOOST_FACTOR = 0.1
EDGE_PIXEL_DIFF = 64

# ---------------------------------------------------------------------------
# Background compositor
# ---------------------------------------------------------------------------

DEFAULT_BLUR_AMOUNT = 10
DEFAULT_SHADOW_OFFSET = 10
SHADOW_BLUR_SIGMA = 4.0
DEFAULT_GRADIENT_ANGLE = 180.0
