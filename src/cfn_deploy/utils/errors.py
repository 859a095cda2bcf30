"""Error handling framework for stack operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass, asdict
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError, WaiterError
from cfn_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during deployment."""
    CONFIGURATION = "configuration"
    TEMPLATE = "template"
    AWS = "aws"
    NETWORK = "network"
    STATE = "state"
    DEPENDENCY = "dependency"
    PROVISIONING = "provisioning"
    CREDENTIAL = "credential"
    PERMISSION = "permission"
    RESOURCE_LIMIT = "resource_limit"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Deployment cannot continue
    ERROR = "error"  # Stage failed
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"


@dataclass
class ErrorContext:
    """Context information for an error."""
    stage: Optional[str] = None
    stack_name: Optional[str] = None
    operation: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for deployment errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize deployment error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.stage:
            lines.append(f"   Stage: {self.context.stage}")
        if self.context.stack_name:
            lines.append(f"   Stack: {self.context.stack_name}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': asdict(self.context),
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(DeploymentError):
    """Error in configuration file or settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class TemplateError(DeploymentError):
    """Error loading or analysing a stage template."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.TEMPLATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CredentialError(DeploymentError):
    """Error related to AWS credentials."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CREDENTIAL,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class PermissionError(DeploymentError):
    """Error related to AWS permissions."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PERMISSION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class NetworkError(DeploymentError):
    """Network-related error."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class StateError(DeploymentError):
    """Error related to state management."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class DependencyError(DeploymentError):
    """Error related to cross-stack references and stage ordering."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ProvisioningError(DeploymentError):
    """Error while applying or deleting a stack."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PROVISIONING,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ResourceLimitError(DeploymentError):
    """Error due to AWS resource limits."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.RESOURCE_LIMIT,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ValidationError(DeploymentError):
    """Error during validation."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ErrorHandler:
    """Handles and categorizes errors from AWS and other sources."""

    # Mapping of AWS error codes to error categories and suggestions
    AWS_ERROR_MAPPING = {
        # Credential errors
        'InvalidClientTokenId': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS credentials are invalid or expired',
            'suggestions': [
                'Check that your AWS credentials are correctly configured',
                'Verify credentials using: aws sts get-caller-identity',
            ]
        },
        'ExpiredToken': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS session token has expired',
            'suggestions': [
                'Refresh your AWS session credentials',
                'Re-authenticate with your identity provider',
            ]
        },

        # Permission errors
        'AccessDenied': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'Verify you have cloudformation:* and the permissions the template resources need',
            ]
        },
        'InsufficientCapabilitiesException': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Template creates IAM resources without the required capability',
            'suggestions': [
                'Add CAPABILITY_IAM to the stage capabilities',
                'Use CAPABILITY_NAMED_IAM if the template names its IAM resources',
            ]
        },

        # Resource limit errors
        'LimitExceededException': {
            'category': ErrorCategory.RESOURCE_LIMIT,
            'message': 'AWS service limit exceeded',
            'suggestions': [
                'Request a service limit increase through AWS Support',
                'Delete unused stacks: aws cloudformation list-stacks',
            ]
        },
        'Throttling': {
            'category': ErrorCategory.RESOURCE_LIMIT,
            'message': 'API rate limit exceeded',
            'suggestions': [
                'Reduce the frequency of API calls',
                'Run stages sequentially instead of in parallel',
            ]
        },

        # Stack errors
        'AlreadyExistsException': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'Stack already exists',
            'suggestions': [
                'Inspect the existing stack: aws cloudformation describe-stacks --stack-name <name>',
                'Delete it or choose a different stack name for the stage',
            ]
        },
        'TokenAlreadyExistsException': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'Another operation with the same client token is in progress',
            'suggestions': ['Wait for the running operation to finish and retry']
        },

        # Validation errors
        'ValidationError': {
            'category': ErrorCategory.VALIDATION,
            'message': 'CloudFormation rejected the request',
            'suggestions': [
                'Validate the template: aws cloudformation validate-template --template-body file://<path>',
                'Check parameter names and values against the template Parameters section',
            ]
        },

        # Network errors
        'RequestTimeout': {
            'category': ErrorCategory.NETWORK,
            'message': 'Request timed out',
            'suggestions': [
                'Check your network connectivity',
                'Retry the operation (automatic retry enabled)',
            ]
        },
        'ServiceUnavailable': {
            'category': ErrorCategory.NETWORK,
            'message': 'AWS service temporarily unavailable',
            'suggestions': [
                'Wait a few moments and retry',
                'Check the AWS Health Dashboard',
            ]
        }
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> DeploymentError:
        """Handle an exception and convert to DeploymentError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            DeploymentError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, DeploymentError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return self._handle_credential_error(error, context)

        if isinstance(error, WaiterError):
            return ProvisioningError(
                message=f"Stack did not reach the expected status: {error}",
                context=context,
                cause=error,
                suggestions=[
                    'Inspect stack events: aws cloudformation describe-stack-events --stack-name <name>',
                ]
            )

        if isinstance(error, (ConnectionError, TimeoutError)):
            return NetworkError(
                message=f'Network error: {str(error)}',
                context=context,
                cause=error,
                suggestions=[
                    'Check your internet connection',
                    'Check if VPN or proxy is interfering',
                ]
            )

        self.logger.debug(f"Unclassified {type(error).__name__}", exc_info=error)
        return DeploymentError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=['Check logs in .cfn-deploy/logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> DeploymentError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized DeploymentError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

        context.request_id = request_id
        context.aws_operation = getattr(error, 'operation_name', None)

        error_info = self.AWS_ERROR_MAPPING.get(error_code)

        if error_info:
            return DeploymentError(
                message=f"{error_info['message']}: {error_message}",
                category=error_info['category'],
                severity=ErrorSeverity.ERROR,
                context=context,
                cause=error,
                suggestions=error_info['suggestions']
            )

        return DeploymentError(
            message=f"AWS Error ({error_code}): {error_message}",
            category=ErrorCategory.AWS,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=[
                'Check AWS documentation for this error code',
                f'AWS Request ID: {request_id}',
            ]
        )

    def _handle_credential_error(
        self,
        error: Exception,
        context: ErrorContext
    ) -> CredentialError:
        """Handle credential-related errors."""
        if isinstance(error, NoCredentialsError):
            return CredentialError(
                message='No AWS credentials found',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile',
                ]
            )

        return CredentialError(
            message='Incomplete AWS credentials',
            context=context,
            cause=error,
            suggestions=[
                'Ensure both access key ID and secret access key are provided',
                'Check credential configuration in ~/.aws/credentials',
            ]
        )


# Global error handler instance
error_handler = ErrorHandler()
