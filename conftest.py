# Ensure tests import the service package from this directory first.
import os
import sys

import pytest

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)


@pytest.fixture(autouse=True)
def reset_proxy_state():
    """Clear the process-wide session, jar, auth and relay stores between tests."""
    from rewrite_proxy.app_proxy import route as proxy_route
    from rewrite_proxy.relay import route as relay_route

    stores = (
        proxy_route.sessions.store,
        proxy_route.cookie_relay.store,
        proxy_route.auth_tracker.store,
        relay_route.relay.registry,
    )
    yield
    for store in stores:
        store.clear()
