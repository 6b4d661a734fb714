import os

# --- Configuration ---
DATABASE = os.getenv("EQPLOT_DATABASE", "history.db")
DEBUG_MODE = os.getenv("EQPLOT_DEBUG", "false").lower() in ("1", "true", "yes")

HOST = os.getenv("EQPLOT_HOST", "0.0.0.0")
PORT = int(os.getenv("EQPLOT_PORT", "5200"))

# Seconds the liveness probe may wait on a locked database
PROBE_TIMEOUT = 2

# History entries older than this many days are purged
RETENTION_DAYS = int(os.getenv("EQPLOT_RETENTION_DAYS", "15"))

# Default sampling domain for plots
DOMAIN_START = -10.0
DOMAIN_END = 10.0
DOMAIN_STEP = 0.1

# OCR settings; TESSERACT_CMD is only needed when tesseract is not on PATH
TESSERACT_CMD = os.getenv("TESSERACT_CMD")
OCR_LANGUAGE = os.getenv("EQPLOT_OCR_LANG", "eng")

# Sentinels stored or returned in place of real values
TEXT_QUERY_SOURCE = "N/A (text query)"
OCR_ERROR = "File::Error"
