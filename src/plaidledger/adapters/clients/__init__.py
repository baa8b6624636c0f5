"""HTTP clients for the proxy and the upstream Plaid API."""
