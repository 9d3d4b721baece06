"""Shared DynamoDB utilities.

This package centralizes:
- boto3 client/resource configuration
- retry/backoff policy for transient storage failures
- cursor pagination token encoding/decoding
- typed errors mapped from botocore failures
- transactional helpers and the optimistic-concurrency runner

"""
