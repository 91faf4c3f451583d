"""Configuration settings for the traffic and bandwidth-cost analyzer."""

import os
from pathlib import Path

PACKAGE_DATA_DIR = Path(__file__).parent / "data"

# Working directory for the SQLite database and exports
BOTMETER_HOME = Path(os.environ.get('BOTMETER_HOME', Path.home() / '.botmeter'))

# Static asset extensions (lowercase) counted in the "static" path group
STATIC_EXTENSIONS = {
    'js', 'mjs', 'cjs', 'css', 'map',
    'png', 'jpg', 'jpeg', 'gif', 'webp', 'svg', 'ico',
    'woff', 'woff2', 'ttf', 'otf',
    'mp4', 'webm', 'mp3', 'wav',
    'pdf', 'zip', 'gz', 'br', 'txt', 'json', 'xml',
}

# Paths that are static even without a matching extension rule
STATIC_PATHS = {'/robots.txt', '/favicon.ico'}

# Per-IP anomaly detection thresholds
ANOMALY_THRESHOLDS = {
    'min_minutes': 3,
    'z_score_threshold': 3.0,
    'min_max_requests': 200,
    'burst_multiplier': 5,
    'burst_min_requests': 300,
    'min_total_requests': 100,
    'high_4xx_rate': 0.5,
    'high_5xx_rate': 0.2,
    'high_404_rate': 0.3,
    'bytes_per_request_heavy': 1_000_000,  # 1 MB per request
    'steady_mean_min': 5,
    'steady_cv_max': 0.2,
}

# User-agent classifier settings
CLASSIFIER_SETTINGS = {
    'signatures_path': os.environ.get(
        'BOTMETER_SIGNATURES', str(PACKAGE_DATA_DIR / 'bot-signatures.json')
    ),
    'quick_confidence': 0.9,
    'signature_confidence': 0.85,
    'headless_confidence': 0.85,
    'empty_ua_confidence': 0.9,
    'default_confidence': 0.4,
    'bulk_batch_size': 200,
    'bulk_batch_bounds': (50, 500),
}

# Disambiguation ("Sherlock") settings
SHERLOCK_SETTINGS = {
    'defer_threshold': 0.65,       # base verdicts below this go to Sherlock
    'web_confidence_threshold': 0.7,
    'max_web_candidates': 20,
    'fast_batch_size': 50,
    'fast_batch_bounds': (10, 100),
    'web_batch_size': 10,
    'web_batch_bounds': (1, 50),
    'max_anomaly_types': 5,
}

# Orchestrator settings
ANALYZER_SETTINGS = {
    'default_window_days': 7,
    'max_anomalies_in_report': 50,
    'example_classifications': 10,
    'sherlock_version': 'v1',
    'tool_versions': {
        'anomaly-detection': 'v1',
        'web-search': 'exa',
    },
}

# Pricing settings
PRICING_SETTINGS = {
    'price_table_path': os.environ.get(
        'BOTMETER_PRICE_TABLE', str(PACKAGE_DATA_DIR / 'price_table.json')
    ),
    'generic_rate_per_gb': 0.10,
    'vercel_default_overage_per_gb': 0.40,
    'cloudfront_default_region': 'us_canada_mexico',
    'cloudfront_default_per_gb': 0.085,
    'cloudfront_free_bytes': 1024 ** 4,  # 1 TB
    'netlify_default_rates': {'personal': 0.25, 'pro': 0.20, 'legacy': 0.55},
    'cloudflare_default_argo_per_gb': 0.10,
}

# External LLM and web-search services
LLM_SETTINGS = {
    'api_key': os.environ.get('OPENAI_API_KEY', ''),
    'base_url': os.environ.get('OPENAI_BASE_URL', 'https://api.openai.com/v1'),
    'model': os.environ.get('BOTMETER_MODEL', 'gpt-4o-mini'),
    'timeout': 60,
    'max_tool_steps': 4,
    'exa_api_key': os.environ.get('EXA_API_KEY', ''),
    'exa_url': 'https://api.exa.ai/search',
    'web_results_per_query': 3,
    'web_content_chars': 1200,
}

# Storage
STORAGE_SETTINGS = {
    'db_path': os.environ.get('BOTMETER_DB', str(BOTMETER_HOME / 'botmeter.db')),
    'batch_size': 1000,
}

# Export settings
EXPORT_SETTINGS = {
    'output_dir': 'exports',
    'csv_delimiter': ',',
    'timestamp_format': '%Y-%m-%d %H:%M:%S',
    'chart_height': 900,
}
