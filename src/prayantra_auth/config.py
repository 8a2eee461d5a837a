"""Runtime configuration for the Prayantra auth client.

Values default to the production mobile settings and can be overridden
through ``PRAYANTRA_*`` environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_DATA_DIR = Path.home() / '.prayantra'

# Refresh must fire with at least this share of the token lifetime left
MIN_REFRESH_MARGIN = 0.1


@dataclass
class AuthConfig:
    """Configuration for the auth client and its background refresh timer."""

    base_url: str = 'http://localhost:8080'
    api_version: str = '/api/v1'
    timeout: float = 30.0
    refresh_interval: float = 270.0  # 4.5 minutes
    access_token_lifetime: float = 300.0  # 5 minutes
    otp_resend_cooldown: float = 30.0
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    vault_key: Optional[str] = None
    app_name: str = 'Prayantra'
    app_version: str = '1.0'
    default_country_code: str = '+91'

    def __post_init__(self):
        self.base_url = self.base_url.rstrip('/')
        self.data_dir = Path(self.data_dir).expanduser()

        if self.refresh_interval <= 0:
            raise ValueError('refresh_interval must be positive')
        if self.refresh_interval > self.access_token_lifetime * (1 - MIN_REFRESH_MARGIN):
            raise ValueError(
                f'refresh_interval ({self.refresh_interval}s) must leave at least a '
                f'{int(MIN_REFRESH_MARGIN * 100)}% margin before token expiry ({self.access_token_lifetime}s)'
            )

    @property
    def api_base_url(self) -> str:
        """Base URL including the API version prefix."""
        return f'{self.base_url}{self.api_version}'

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / 'cache'

    @property
    def vault_dir(self) -> Path:
        return self.data_dir / 'vault'

    @classmethod
    def from_env(cls, **overrides) -> 'AuthConfig':
        """Build a config from ``PRAYANTRA_*`` environment variables.

        Explicit keyword overrides take priority over the environment.

        Example:
            >>> config = AuthConfig.from_env(timeout=10.0)
        """
        values = {}
        if os.getenv('PRAYANTRA_BASE_URL'):
            values['base_url'] = os.getenv('PRAYANTRA_BASE_URL')
        if os.getenv('PRAYANTRA_API_VERSION'):
            values['api_version'] = os.getenv('PRAYANTRA_API_VERSION')
        if os.getenv('PRAYANTRA_TIMEOUT'):
            values['timeout'] = float(os.getenv('PRAYANTRA_TIMEOUT'))
        if os.getenv('PRAYANTRA_REFRESH_INTERVAL'):
            values['refresh_interval'] = float(os.getenv('PRAYANTRA_REFRESH_INTERVAL'))
        if os.getenv('PRAYANTRA_TOKEN_LIFETIME'):
            values['access_token_lifetime'] = float(os.getenv('PRAYANTRA_TOKEN_LIFETIME'))
        if os.getenv('PRAYANTRA_DATA_DIR'):
            values['data_dir'] = Path(os.getenv('PRAYANTRA_DATA_DIR'))
        if os.getenv('PRAYANTRA_VAULT_KEY'):
            values['vault_key'] = os.getenv('PRAYANTRA_VAULT_KEY')

        values.update(overrides)
        return cls(**values)
