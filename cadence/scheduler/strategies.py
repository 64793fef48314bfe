"""Verification strategies — run one automated check and return a verdict.

Two variants exist, matching the two :mod:`cadence.scheduler.models`
automation configs:

- ``http``: probe an endpoint, compare the status code and optionally one
  dot-path value in the JSON body.
- ``integration``: look up a stored connector and hand the check to the
  handler registered for its type.  Unregistered types are reported as
  ``skipped`` so missing coverage never shows up as a compliance failure.

Strategies hold no state between runs.  Anything that prevents a verdict
(DNS, connect or timeout failures, an unsupported method, a missing
connector) raises :class:`CheckExecutionError` instead.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from cadence.config import settings
from cadence.scheduler.models import (
    DEFAULT_EXPECTED_STATUS_CODES,
    HttpCheck,
    IntegrationCheck,
    Verdict,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from cadence.scheduler.models import Integration

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD"})

_MISSING = object()


class CheckExecutionError(Exception):
    """The check could not reach its target or could not be evaluated."""


@dataclass(frozen=True)
class CheckOutcome:
    """Verdict plus diagnostics produced by a strategy."""

    verdict: Verdict
    notes: str
    raw_response: str | None = None
    error_message: str | None = None


# -- JSON validation -----------------------------------------------------------


def resolve_path(document: Any, path: str) -> Any:
    """Walk dot-separated object keys; returns ``_MISSING`` when any step is absent."""
    current = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def json_equal(left: Any, right: Any) -> bool:
    """Structural JSON equality (``true`` never equals ``1``)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(json_equal(left[k], right[k]) for k in left)
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(
            json_equal(a, b) for a, b in zip(left, right, strict=True)
        )
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return False
    return left == right


def validate_json_path(body: str, path: str, expected: Any) -> bool:
    """True when *body* parses as JSON and the value at *path* equals *expected*."""
    try:
        document = json.loads(body)
    except ValueError:
        return False
    value = resolve_path(document, path)
    return value is not _MISSING and json_equal(value, expected)


# -- HTTP ----------------------------------------------------------------------


async def run_http_check(
    check: HttpCheck,
    *,
    timeout: float | None = None,
    raw_response_limit: int | None = None,
) -> CheckOutcome:
    """Issue the configured request and judge the response."""
    method = check.method.upper()
    if method not in SUPPORTED_METHODS:
        msg = f"Unsupported HTTP method: {check.method}"
        raise CheckExecutionError(msg)

    timeout = timeout or settings.http_timeout_seconds
    limit = settings.raw_response_limit if raw_response_limit is None else raw_response_limit

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.request(
                method,
                check.endpoint,
                headers=check.headers,
                json=check.body,
            )
    except httpx.TimeoutException as exc:
        msg = f"HTTP {method} {check.endpoint} timed out after {timeout}s"
        raise CheckExecutionError(msg) from exc
    except httpx.HTTPError as exc:
        msg = f"HTTP {method} {check.endpoint} failed: {exc}"
        raise CheckExecutionError(msg) from exc

    status = resp.status_code
    body = resp.text
    raw_response = body[:limit]
    expected_codes = check.expected_status_codes or list(DEFAULT_EXPECTED_STATUS_CODES)

    if status not in expected_codes:
        return CheckOutcome(
            verdict=Verdict.FAILED,
            notes=(
                f"HTTP {method} returned unexpected status {status}; "
                f"expected one of {sorted(expected_codes)}"
            ),
            raw_response=raw_response,
            error_message=f"HTTP {method} returned unexpected status {status}",
        )

    if check.validation_path is not None and not validate_json_path(
        body, check.validation_path, check.expected_value
    ):
        return CheckOutcome(
            verdict=Verdict.FAILED,
            notes=(
                f"HTTP {method} returned status {status} but response validation "
                f"failed for path '{check.validation_path}'"
            ),
            raw_response=raw_response,
            error_message="Response validation failed",
        )

    return CheckOutcome(
        verdict=Verdict.PASSED,
        notes=f"HTTP {method} returned status {status}",
        raw_response=raw_response,
    )


# -- Integrations --------------------------------------------------------------


class ConnectorRegistry:
    """Maps an integration type (``"aws"``, ``"github"``…) to its check handler.

    Register handlers with the decorator::

        @connectors.connector("okta")
        async def okta_check(integration, check) -> CheckOutcome:
            ...
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Awaitable[CheckOutcome]]] = {}

    def connector(self, integration_type: str) -> Callable:
        """Decorator to register an async handler for *integration_type*."""

        def decorator(fn: Callable[..., Awaitable[CheckOutcome]]) -> Callable:
            if not inspect.iscoroutinefunction(fn):
                msg = f"Connector handler '{integration_type}' must be an async function"
                raise TypeError(msg)
            self._handlers[integration_type] = fn
            logger.debug("Registered connector handler: %s", integration_type)
            return fn

        return decorator

    def get(self, integration_type: str) -> Callable[..., Awaitable[CheckOutcome]] | None:
        return self._handlers.get(integration_type)

    def __contains__(self, integration_type: str) -> bool:
        return integration_type in self._handlers


connectors = ConnectorRegistry()


@connectors.connector("aws")
async def aws_check(integration: Integration, check: IntegrationCheck) -> CheckOutcome:
    # TODO: map check.integration_config onto Config/SecurityHub rule lookups.
    return CheckOutcome(
        verdict=Verdict.SKIPPED,
        notes="AWS integration testing not yet implemented",
    )


@connectors.connector("github")
async def github_check(integration: Integration, check: IntegrationCheck) -> CheckOutcome:
    # TODO: map check.integration_config onto branch protection / alert queries.
    return CheckOutcome(
        verdict=Verdict.SKIPPED,
        notes="GitHub integration testing not yet implemented",
    )


async def run_integration_check(
    check: IntegrationCheck,
    *,
    lookup: Callable[[str], Awaitable[Integration | None]],
    registry: ConnectorRegistry | None = None,
) -> CheckOutcome:
    """Load the connector named by *check* and dispatch to its handler."""
    registry = registry or connectors
    integration = await lookup(check.integration_id)
    if integration is None:
        msg = f"Integration {check.integration_id} not found"
        raise CheckExecutionError(msg)

    handler = registry.get(integration.integration_type)
    if handler is None:
        return CheckOutcome(
            verdict=Verdict.SKIPPED,
            notes=(
                f"Integration type '{integration.integration_type}' "
                "not yet supported for automated testing"
            ),
        )
    return await handler(integration, check)


# -- Dispatch ------------------------------------------------------------------


class CheckRunner:
    """Runs an automation config with the strategy for its variant.

    Args:
        lookup: Async callable resolving an integration ID to its stored
            configuration (usually ``VerificationStore.get_integration``).
        registry: Connector registry for integration checks.
        http_timeout: Default per-request timeout in seconds.
    """

    def __init__(
        self,
        lookup: Callable[[str], Awaitable[Integration | None]],
        registry: ConnectorRegistry | None = None,
        http_timeout: float | None = None,
    ) -> None:
        self._lookup = lookup
        self._registry = registry or connectors
        self._http_timeout = http_timeout or settings.http_timeout_seconds

    async def run(
        self,
        config: HttpCheck | IntegrationCheck,
        *,
        timeout: float | None = None,
    ) -> CheckOutcome:
        if isinstance(config, HttpCheck):
            return await run_http_check(config, timeout=timeout or self._http_timeout)
        if isinstance(config, IntegrationCheck):
            return await run_integration_check(
                config, lookup=self._lookup, registry=self._registry
            )
        msg = f"Unknown automation type: {getattr(config, 'automation_type', config)!r}"
        raise CheckExecutionError(msg)
