"""Hostmap Proxy: reverse proxy routing on hostnames that encode the origin."""
