"""Health subsystem: integrity probes against the live database."""

from .checker import HealthCheckResult, HealthChecks, IntegrityChecker
from .provider import ConnectionProvider, SQLiteConnectionProvider
