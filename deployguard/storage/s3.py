#!/usr/bin/env python3
"""S3 storage backend for shared snapshot history."""

import os

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ConfigurationError, ObjectExistsError, StorageError
from .base import StorageBackend


class S3Storage(StorageBackend):
    """S3 storage backend; atomic create relies on conditional writes."""

    def __init__(self, config, client=None):
        self.bucket = config.get('bucket_name')
        self.region = config.get('region', 'us-east-1')
        self.endpoint_url = config.get('endpoint_url')
        self.prefix = config.get('prefix', 'deployguard/')
        self._client = client

        if client is None:
            self._validate_credentials()

    def _validate_credentials(self):
        """Validate required AWS credentials are set."""
        missing = [name for name in ('AWS_ACCESS_KEY_ID', 'AWS_SECRET_ACCESS_KEY') if name not in os.environ]
        if missing:
            raise ConfigurationError(f"Missing environment variables: {', '.join(missing)}")

    def _get_client(self):
        """Lazy initialization of boto3 client."""
        if self._client is None:
            self._client = boto3.client(
                's3',
                endpoint_url=self.endpoint_url,
                aws_access_key_id=os.environ['AWS_ACCESS_KEY_ID'],
                aws_secret_access_key=os.environ['AWS_SECRET_ACCESS_KEY'],
                region_name=self.region
            )
        return self._client

    def _key(self, storage_key):
        return f"{self.prefix}{storage_key}"

    def _get_s3_url(self, storage_key):
        return f"s3://{self.bucket}/{self._key(storage_key)}"

    def _handle_error(self, operation, storage_key, error):
        """Unified error handling."""
        raise StorageError(f"{operation} failed for {self._get_s3_url(storage_key)}: {error}")

    def create(self, storage_key, content):
        try:
            self._get_client().put_object(
                Bucket=self.bucket, Key=self._key(storage_key),
                Body=content.encode('utf-8'), IfNoneMatch='*'
            )
        except ClientError as e:
            if e.response['Error']['Code'] in ('PreconditionFailed', 'ConditionalRequestConflict'):
                raise ObjectExistsError(f"Object already exists: {self._get_s3_url(storage_key)}")
            self._handle_error("S3 create", storage_key, e)
        except BotoCoreError as e:
            self._handle_error("S3 create", storage_key, e)
        return self._get_s3_url(storage_key)

    def write(self, storage_key, content):
        try:
            self._get_client().put_object(
                Bucket=self.bucket, Key=self._key(storage_key), Body=content.encode('utf-8')
            )
        except (ClientError, BotoCoreError) as e:
            self._handle_error("S3 upload", storage_key, e)
        return self._get_s3_url(storage_key)

    def read(self, storage_key):
        try:
            response = self._get_client().get_object(Bucket=self.bucket, Key=self._key(storage_key))
            return response['Body'].read().decode('utf-8')
        except (ClientError, BotoCoreError) as e:
            self._handle_error("S3 download", storage_key, e)

    def exists(self, storage_key):
        try:
            self._get_client().head_object(Bucket=self.bucket, Key=self._key(storage_key))
            return True
        except ClientError as e:
            if e.response['Error']['Code'] in ('404', 'NoSuchKey', 'NotFound'):
                return False
            self._handle_error("S3 head", storage_key, e)

    def list_keys(self, prefix):
        keys = []
        paginator = self._get_client().get_paginator('list_objects_v2')
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self._key(prefix)):
                for item in page.get('Contents', []):
                    keys.append(item['Key'][len(self.prefix):])
        except (ClientError, BotoCoreError) as e:
            self._handle_error("S3 list", prefix, e)
        return sorted(keys)

    def describe(self, storage_key):
        return self._get_s3_url(storage_key)
