"""AWS Lambda driver for Gridlet.

Configuration comes from the function's environment only. Each request's
deadline is capped by the time the runtime has left, so a run never
outlives its invocation. Failures, including a rejected login, are raised so
that the runtime records the invocation as failed.
"""

import logging

import config
import engine
from deadline import Deadline
from main import log_level_for

logger = logging.getLogger("gridlet")

# Leave the runtime a little time to report an error
_RUNTIME_MARGIN_S = 0.5


def _deadline_factory(cfg: config.GridletConfig, context):
    remaining_ms = getattr(context, "get_remaining_time_in_millis", None)

    def factory() -> Deadline:
        timeout = cfg.request_timeout_s
        if remaining_ms is not None:
            left = remaining_ms() / 1000.0 - _RUNTIME_MARGIN_S
            timeout = min(timeout, max(left, 0.001))
        return Deadline(timeout)

    return factory


def handler(event, context):
    cfg = config.GridletConfig.from_mapping(
        config.config_merge(config.config_default(), config.config_from_environment())
    )
    # The Lambda runtime installs its own handler on the root logger
    logging.getLogger().setLevel(log_level_for(cfg.log_level, cfg.log_quiet))

    result = engine.run(cfg, deadline_factory=_deadline_factory(cfg, context))
    logger.info("Run complete: %s", result)
    return "Ok"
