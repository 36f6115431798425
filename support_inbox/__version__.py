"""Version information for Support Inbox."""

import os

__version__ = "0.4.0"

# Populated by the deployment pipeline
__build_date__ = os.getenv("BUILD_DATE") or None
__commit_sha__ = os.getenv("COMMIT_SHA") or None
