"""Prayantra auth - device-bound OTP/MPIN login and session management client."""

from prayantra_auth.client import AuthClient
from prayantra_auth.config import AuthConfig
from prayantra_auth.endpoints import UserRole
from prayantra_auth.flow import FlowResult, FlowState, ForgotMpinFlow, LoginFlow

__all__ = ['AuthClient', 'AuthConfig', 'FlowResult', 'FlowState', 'ForgotMpinFlow', 'LoginFlow', 'UserRole']
