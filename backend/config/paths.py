"""
Centralized path configuration for PatchPilot
All persistent state lives under DATA_DIR so a single volume mount keeps it
"""

import os

DATA_DIR = os.getenv('PATCHPILOT_DATA_DIR', '/app/data')

# For development/testing outside a container image
if not os.path.exists('/app') and 'PATCHPILOT_DATA_DIR' not in os.environ:
    DATA_DIR = './data'

DATABASE_PATH = os.path.join(DATA_DIR, 'patchpilot.db')
LOG_DIR = os.path.join(DATA_DIR, 'logs')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, LOG_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments
