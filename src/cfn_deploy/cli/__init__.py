"""Command-line interface for cfn-deploy."""
