import os


def _env_flag(name, default):
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    """Base configuration"""

    # Job list and runtime files
    CONFIG_FILE = os.environ.get('BACKUPD_CONFIG_FILE') or '/etc/backup_system.conf'
    LOG_FILE = os.environ.get('BACKUPD_LOG_FILE') or '/var/log/backup_system.log'
    PID_FILE = os.environ.get('BACKUPD_PID_FILE') or '/var/run/backup_system.pid'

    # Logging
    DEBUG = False
    LOG_MAX_BYTES = 10485760  # 10MB
    LOG_BACKUP_COUNT = 10

    # Scheduler
    POLL_INTERVAL = int(os.environ.get('BACKUPD_POLL_INTERVAL', 60))
    DEFAULT_RETENTION = 1

    # Archiving
    COMPRESSOR = os.environ.get('BACKUPD_COMPRESSOR') or 'auto'
    KDF_ITERATIONS = int(os.environ.get('BACKUPD_KDF_ITERATIONS', 480000))

    # start/stop/status need root, like the service they control
    REQUIRE_ROOT = _env_flag('BACKUPD_REQUIRE_ROOT', 'true')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    REQUIRE_ROOT = _env_flag('BACKUPD_REQUIRE_ROOT', 'false')

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    CONFIG_FILE = os.environ.get('BACKUPD_CONFIG_FILE') or os.path.join(DATA_DIR, 'backup_system.conf')
    LOG_FILE = os.path.join(DATA_DIR, 'logs', 'backup_system.log')
    PID_FILE = os.path.join(DATA_DIR, 'backup_system.pid')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name=None):
    """Return the settings class for ``config_name`` (or ``BACKUPD_ENV``)."""
    if config_name is None:
        config_name = os.environ.get('BACKUPD_ENV', 'production')
    return config.get(config_name, config['default'])
