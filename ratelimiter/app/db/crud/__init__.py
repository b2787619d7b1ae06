"""CRUD operations package.

- config.py: admin-managed rate limit configs
- usage_log.py: admission decision audit rows
"""

from ratelimiter.app.db.crud.config import (
    count_active_by_tier,
    create_config,
    disable_config,
    find_active_config,
    get_config_by_id,
    list_active_configs_by_tier,
    list_active_configs_by_user,
    list_configs,
    update_config,
)
from ratelimiter.app.db.crud.usage_log import (
    calculate_block_rate,
    get_denied_logs_between,
    get_top_users_by_request_count,
    save_usage_logs_bulk,
)

__all__ = [
    "count_active_by_tier",
    "create_config",
    "disable_config",
    "find_active_config",
    "get_config_by_id",
    "list_active_configs_by_tier",
    "list_active_configs_by_user",
    "list_configs",
    "update_config",
    "calculate_block_rate",
    "get_denied_logs_between",
    "get_top_users_by_request_count",
    "save_usage_logs_bulk",
]
