import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import supabase_rest as db

logger = logging.getLogger(__name__)


def log_activity(action_type: str, target_type: str, target_id: Optional[str] = None,
                 metadata: Optional[Dict[str, Any]] = None, admin_id: Optional[str] = None,
                 user_id: Optional[str] = None) -> bool:
    """
    Write an admin_activity_logs row.

    Logging is best effort: a failure is logged and False is returned, the
    caller's operation carries on.
    """
    entry_metadata = dict(metadata or {})
    entry_metadata.setdefault('timestamp', datetime.now(timezone.utc).isoformat())

    try:
        db.insert_row('admin_activity_logs', {
            'admin_id': admin_id,
            'user_id': user_id,
            'action_type': action_type,
            'target_type': target_type,
            'target_id': target_id,
            'metadata': entry_metadata,
        })
        logger.info(f"Activity logged: {action_type} on {target_type} {target_id or ''}".rstrip())
        return True
    except Exception as e:
        logger.warning(f"Failed to create activity log for {action_type} (non-fatal): {str(e)}")
        return False
