from prometheus_client import Counter, Enum, Gauge

SERIAL_LINK_STATE = Enum(
    'serial_link_state_enum',
    'Current serial link state',
    states=['idle', 'connecting', 'connected', 'error', 'disconnected']
)

SERIAL_READINGS_TOTAL = Counter(
    'serial_readings_total',
    'Total number of temperature readings decoded from the probe'
)

SERIAL_MALFORMED_LINES_TOTAL = Counter(
    'serial_malformed_lines_total',
    'Total number of probe reply lines dropped as malformed'
)

TELEMETRY_SUBSCRIBERS = Gauge(
    'telemetry_subscribers',
    'Number of viewers subscribed to live telemetry'
)

API_VALIDATION_ERRORS_TOTAL = Counter(
    'api_validation_errors_total',
    'Total number of API validation errors'
)

SESSION_SAVE_FAILURES_TOTAL = Counter(
    'session_save_failures_total',
    'Total number of session store write failures'
)
