# Library root folders scanned for charts. Folders are walked recursively;
# loose chart folders and .sng containers are both picked up.
# Overridden by the LIBRARY_PATHS environment variable (os.pathsep separated).
LIBRARY_PATHS = [
    '~/Clone Hero/Songs',
]

# MongoDB connection used for the chart catalog.
# Overridden by CHART_CATALOG_MONGO_URI, CHART_CATALOG_MONGO_HOST and CHART_CATALOG_MONGO_DB.
MONGO = {
    'host': ['127.0.0.1:27017'],
    'database': 'chart_catalog',
}

# Token required by the scan, cancel and rescan endpoints.
ADMIN_SCAN_TOKEN = 'change-me'

# Scan the configured library paths in the background when the app starts.
SCAN_ON_START = False

# Flask-Caching backend for chart lookups, e.g. 'SimpleCache' or 'RedisCache'.
CACHE_TYPE = 'SimpleCache'
