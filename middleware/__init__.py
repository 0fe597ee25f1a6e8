"""Middleware package: request guards, rate limiting and response hardening.

Import submodules directly (middleware.pipeline, middleware.rate_limit);
the guards depend on services that themselves use middleware.rate_limit.
"""
