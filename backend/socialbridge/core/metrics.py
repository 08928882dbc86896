"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labelnames=()):
    # Module reloads in tests would otherwise raise "Duplicated timeseries"
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# OAuth flow metrics
oauth_flows_counter = _counter(
    'socialbridge_oauth_flows_total',
    'OAuth connect flows by provider and outcome',
    ['provider', 'outcome']
)

# Refresh metrics
token_refresh_counter = _counter(
    'socialbridge_token_refresh_total',
    'Provider access token refresh attempts by provider and outcome',
    ['provider', 'outcome']
)

# State registry metrics
state_tokens_evicted_counter = _counter(
    'socialbridge_state_tokens_evicted_total',
    'OAuth state tokens removed by the expiry sweep'
)

# Auth metrics
login_attempts_counter = _counter(
    'socialbridge_login_attempts_total',
    'Total number of login attempts',
    ['status']
)
