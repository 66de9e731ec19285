"""
Runtime readiness checks for production rollout.
"""

from __future__ import annotations

from dataclasses import dataclass

from wallet_backend.common.config import Settings, get_settings
from wallet_backend.common.errors import ValidationError
from wallet_backend.common.logging import get_project_logger
from wallet_backend.queue.dispatcher import parse_queue_weights

log = get_project_logger()

_KNOWN_GATEWAYS = {"simulated", "http"}


@dataclass
class ReadinessIssue:
    severity: str  # error|warning
    code: str
    message: str


@dataclass
class ReadinessState:
    ready: bool
    issues: list[ReadinessIssue]


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


def _simulated_gateway_issues(s: Settings) -> list[ReadinessIssue]:
    issues: list[ReadinessIssue] = []
    probabilities = {
        "GATEWAY_SIM_COMPLETE_PROBABILITY": s.gateway_sim_complete_probability,
        "GATEWAY_SIM_FAIL_PROBABILITY": s.gateway_sim_fail_probability,
        "GATEWAY_SIM_PROCESS_SUCCESS_RATE": s.gateway_sim_process_success_rate,
    }
    for name, value in probabilities.items():
        if not 0.0 <= value <= 1.0:
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="gateway_sim_probability_out_of_range",
                    message=f"{name} должен быть в [0, 1]",
                )
            )
    if s.gateway_sim_complete_probability + s.gateway_sim_fail_probability > 1.0:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="gateway_sim_probabilities_sum",
                message="COMPLETE + FAIL вероятности симулятора не могут превышать 1",
            )
        )
    return issues


def evaluate_readiness(settings: Settings | None = None) -> ReadinessState:
    s = settings or get_settings()
    issues: list[ReadinessIssue] = []
    is_prod = _is_prod_env(s.app_env)

    try:
        parse_queue_weights(s.worker_queues)
    except ValidationError as e:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="worker_queues_invalid",
                message=f"WORKER_QUEUES не разбирается: {e.message}",
            )
        )

    if s.worker_concurrency < 1:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="worker_concurrency_invalid",
                message="WORKER_CONCURRENCY должен быть >= 1",
            )
        )

    if s.payment_check_interval_sec <= 0:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="payment_check_interval_invalid",
                message="PAYMENT_CHECK_INTERVAL_SEC должен быть > 0",
            )
        )

    if s.retry_max_attempts < 0:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="retry_max_attempts_invalid",
                message="RETRY_MAX_ATTEMPTS не может быть отрицательным",
            )
        )

    provider = (s.payment_gateway_provider or "").strip().lower()
    if provider not in _KNOWN_GATEWAYS:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="payment_gateway_unknown",
                message=f"Неизвестный PAYMENT_GATEWAY_PROVIDER={provider!r}",
            )
        )
    if provider == "http" and not (s.payment_gateway_base_url or "").strip():
        issues.append(
            ReadinessIssue(
                severity="error",
                code="payment_gateway_base_url_empty",
                message="PAYMENT_GATEWAY_PROVIDER=http требует PAYMENT_GATEWAY_BASE_URL",
            )
        )
    if provider == "http" and not (s.payment_gateway_api_key or "").strip():
        issues.append(
            ReadinessIssue(
                severity="error" if is_prod else "warning",
                code="payment_gateway_api_key_empty",
                message="PAYMENT_GATEWAY_PROVIDER=http требует PAYMENT_GATEWAY_API_KEY",
            )
        )

    if not (s.admin_api_keys or "").strip():
        issues.append(
            ReadinessIssue(
                severity="error" if is_prod else "warning",
                code="admin_api_keys_empty",
                message="ADMIN_API_KEYS пустой, admin API открыт без авторизации",
            )
        )

    if s.reconciliation_enabled and s.reconciliation_stale_sec < 2 * s.payment_check_interval_sec:
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="reconciliation_stale_too_small",
                message="RECONCILIATION_STALE_SEC меньше двух интервалов проверки: возможны дубли",
            )
        )

    if provider == "simulated":
        issues.extend(_simulated_gateway_issues(s))

    if is_prod:
        if provider == "simulated":
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="simulated_gateway_in_prod",
                    message="В prod используется симулятор шлюза",
                )
            )
        if provider == "http" and (s.payment_gateway_base_url or "").strip().lower().startswith(
            "http://"
        ):
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="payment_gateway_not_https",
                    message="В prod PAYMENT_GATEWAY_BASE_URL должен использовать https://",
                )
            )

    ready = all(i.severity != "error" for i in issues)
    return ReadinessState(ready=ready, issues=issues)


def enforce_startup_readiness(
    *, service_name: str, settings: Settings | None = None
) -> ReadinessState:
    s = settings or get_settings()
    state = evaluate_readiness(s)
    errors = [i for i in state.issues if i.severity == "error"]

    if errors:
        log.error(
            "startup_readiness_failed",
            extra={
                "payload": {
                    "service": service_name,
                    "app_env": s.app_env,
                    "error_codes": [e.code for e in errors],
                }
            },
        )
    else:
        log.info(
            "startup_readiness_ok",
            extra={
                "payload": {
                    "service": service_name,
                    "app_env": s.app_env,
                    "warnings": [i.code for i in state.issues],
                }
            },
        )

    should_fail_fast = _is_prod_env(s.app_env) and bool(s.readiness_fail_fast_in_prod)
    if should_fail_fast and errors:
        msg = ", ".join(e.code for e in errors)
        raise RuntimeError(f"startup readiness failed for {service_name}: {msg}")
    return state
