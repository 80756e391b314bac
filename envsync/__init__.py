"""Infisical -> Docker environment sync.

Single-host agent that keeps running containers' environment in line with a
secret source:
 - polls each configured service on its own interval
 - detects changes against persisted state and the materialized env file
 - recreates the container (and its compose dependents) so new values apply
 - rebuilds all schedulers when the config file changes

The implementation is intentionally small so it can be audited and explained.
"""
