"""Default pipeline settings."""

DEFAULTS = {
    "model": "claude-sonnet-4-5-20250929",
    "max_tokens": 32768,
    "deployment_timeout": 60,          # seconds per deployment attempt
    "health_check_interval": 2,        # seconds between sandbox probes
    "command_chunk_size": 5,
    "command_max_retries": 3,
    "diff_max_retries": 3,
    "fuzzy_threshold": 0.87,
    "fixer_passes": 2,
    "regeneration_passes": 5,
    "review_cycles": 2,
    "stream_chunk_size": 256,
    "event_history": 500,
    "finalization_phase_name": "Finalization and Review",
    "sandbox_url": "http://localhost:8787",
    "sandbox_request_timeout": 30,
}
