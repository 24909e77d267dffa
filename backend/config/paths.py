"""
Centralized path configuration for Harbormaster
Ensures all modules use consistent, volume-mounted paths
"""

import os

# Base paths - these MUST use absolute paths to the volume mount
# The /app/data directory is mounted as a volume in Docker
DATA_DIR = os.getenv('HARBORMASTER_DATA_DIR', '/app/data')

# For development/testing outside Docker
if 'HARBORMASTER_DATA_DIR' not in os.environ and not os.path.exists('/app'):
    # Running locally, use relative paths
    DATA_DIR = './data'

# Database path - MUST be in the volume mount for persistence
DATABASE_PATH = os.path.join(DATA_DIR, 'harbormaster.db')

# One sub-directory per stack ID holds the materialized project files
STACKS_DIR = os.getenv('HARBORMASTER_STACKS_DIR', os.path.join(DATA_DIR, 'compose'))

# Shared docker CLI configuration (registry credentials live in config.json here)
DOCKER_CONFIG_DIR = os.getenv('HARBORMASTER_DOCKER_CONFIG_DIR', os.path.join(DATA_DIR, 'docker_config'))

# Fernet key for registry passwords
ENCRYPTION_KEY_PATH = os.path.join(DATA_DIR, 'encryption.key')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, STACKS_DIR, DOCKER_CONFIG_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments
