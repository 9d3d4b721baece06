from __future__ import annotations

from functools import lru_cache

import boto3
from botocore.config import Config

from ...settings import settings


@lru_cache(maxsize=1)
def botocore_config() -> Config:
    # Timeouts bound every storage call; nothing here may block indefinitely.
    return Config(
        retries={"max_attempts": 10, "mode": "adaptive"},
        connect_timeout=settings.ddb_connect_timeout_s,
        read_timeout=settings.ddb_read_timeout_s,
    )


@lru_cache(maxsize=1)
def dynamodb_resource():
    return boto3.resource(
        "dynamodb",
        region_name=settings.aws_region,
        config=botocore_config(),
    )


@lru_cache(maxsize=1)
def dynamodb_client():
    return boto3.client(
        "dynamodb",
        region_name=settings.aws_region,
        config=botocore_config(),
    )


def table_resource(table_name: str):
    return dynamodb_resource().Table(table_name)
