# bulk_add/config.py
from dotenv import load_dotenv
import os

load_dotenv()

# API Keys
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
CATALOG_API_TOKEN = os.getenv("CATALOG_API_TOKEN")

# Runtime parameters
RESOLVE_CONCURRENCY = 5
SUBMIT_CHUNK_SIZE = 5
AMBIGUITY_THRESHOLD = 10.0
NAME_WEIGHT = 0.7
LOCATION_WEIGHT = 0.3
MAX_CANDIDATES = 5
REQUESTS_PER_SECOND = 10
REQUEST_TIMEOUT = 30
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Duplicate policies
FAIL_OPEN_DUPLICATE_CHECK = True
DETECT_INPUT_DUPLICATES = True

# URLs
PLACES_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"
CATALOG_API_URL = os.getenv("CATALOG_API_URL", "http://localhost:5001/api")

# File names
INPUT_TXT = "bulk_add.txt"
OUTPUT_CSV = "bulk_add_results.csv"
