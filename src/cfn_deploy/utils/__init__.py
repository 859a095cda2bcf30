"""Utility modules for logging, AWS client management, and helpers."""

from cfn_deploy.utils.aws_client import AWSClientManager, AWSCredentials
from cfn_deploy.utils.retry import RetryStrategy
from cfn_deploy.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    DeploymentError,
    ConfigurationError,
    TemplateError,
    CredentialError,
    PermissionError,
    NetworkError,
    StateError,
    DependencyError,
    ProvisioningError,
    ResourceLimitError,
    ValidationError,
    ErrorHandler,
    error_handler
)
from cfn_deploy.utils.diagnostics import Diagnosis, FailureMode, diagnose_events
from cfn_deploy.utils.logging import get_logger, setup_logging

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AWSCredentials',

    # Retry
    'RetryStrategy',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'DeploymentError',
    'ConfigurationError',
    'TemplateError',
    'CredentialError',
    'PermissionError',
    'NetworkError',
    'StateError',
    'DependencyError',
    'ProvisioningError',
    'ResourceLimitError',
    'ValidationError',
    'ErrorHandler',
    'error_handler',

    # Diagnostics
    'Diagnosis',
    'FailureMode',
    'diagnose_events',

    # Logging
    'get_logger',
    'setup_logging',
]
