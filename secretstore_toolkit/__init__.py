"""Versioned secrets across AWS Secrets Manager, GCP Secret Manager and local encrypted files."""
