"""cfn-deploy: ordered CloudFormation stage deployment."""

__version__ = "0.1.0"
