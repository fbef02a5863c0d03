import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


@dataclass
class HydrationConfig:
    daily_goal_ml: int = 2000
    bottle_ml: int = 500
    wake_minutes: int = 480  # 08:00
    sleep_minutes: int = 1320  # 22:00
    daily_log_retention_days: int = 365
    history_limit: int = 50
    data_dir: str = "data"
    fill_estimate_url: Optional[str] = None
    rollover_safety_margin_ms: int = 50
    nudge_recheck_seconds: int = 60
    scan_cooldown_seconds: int = 15
    app_port: int = 8080

    @classmethod
    def from_env(cls) -> 'HydrationConfig':
        return cls(
            daily_goal_ml=int(os.getenv('DAILY_GOAL_IN_ML', 2000)),
            bottle_ml=int(os.getenv('BOTTLE_ML', 500)),
            wake_minutes=int(os.getenv('WAKE_MINUTES', 480)),
            sleep_minutes=int(os.getenv('SLEEP_MINUTES', 1320)),
            daily_log_retention_days=int(os.getenv('DAILY_LOG_RETENTION_DAYS', 365)),
            history_limit=int(os.getenv('HISTORY_LIMIT', 50)),
            data_dir=os.getenv('DATA_DIR', 'data'),
            fill_estimate_url=os.getenv('FILL_ESTIMATE_URL') or None,
            rollover_safety_margin_ms=int(os.getenv('ROLLOVER_SAFETY_MARGIN_MS', 50)),
            nudge_recheck_seconds=int(os.getenv('NUDGE_RECHECK_SECONDS', 60)),
            scan_cooldown_seconds=int(os.getenv('SCAN_COOLDOWN_SECONDS', 15)),
            app_port=int(os.getenv('APP_PORT', 8080)),
        )
