import os
from dataclasses import dataclass

import pytest
from moto import mock_aws

# Handlers build their services at import time, so the environment must be
# in place before any test module imports them
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SECURITY_TOKEN"] = "testing"
os.environ["AWS_SESSION_TOKEN"] = "testing"
os.environ["AWS_REGION"] = "eu-west-3"
os.environ["AWS_DEFAULT_REGION"] = "eu-west-3"
os.environ["USERS_TABLE_NAME"] = "test-portal-users"
os.environ["LISTINGS_TABLE_NAME"] = "test-portal-listings"
os.environ["UPGRADE_REQUESTS_TABLE_NAME"] = "test-portal-upgrade-requests"
os.environ["COGNITO_CLIENT_ID"] = "test-client-id"
os.environ["STATUS_CACHE_TTL_SECONDS"] = "0"
os.environ["POWERTOOLS_SERVICE_NAME"] = "listing-portal"
os.environ["POWERTOOLS_LOG_LEVEL"] = "DEBUG"

from portal_core.services.aws import get_ddb_table, get_dynamodb_client, get_dynamodb_resource  # noqa: E402
from tests.fixtures.ddb import create_all_tables  # noqa: E402


@pytest.fixture(autouse=True)
def clear_aws_caches():
    get_ddb_table.cache_clear()
    get_dynamodb_resource.cache_clear()
    get_dynamodb_client.cache_clear()
    yield
    get_ddb_table.cache_clear()
    get_dynamodb_resource.cache_clear()
    get_dynamodb_client.cache_clear()


@pytest.fixture
def tables():
    """All portal tables inside a moto mock."""
    with mock_aws():
        yield create_all_tables()


@pytest.fixture
def lambda_context():
    @dataclass
    class LambdaContext:
        function_name: str = "test"
        memory_limit_in_mb: int = 128
        invoked_function_arn: str = "arn:aws:lambda:eu-west-3:123456789012:function:test"
        aws_request_id: str = "da658bd3-2d6f-4e7b-8ec2-937234644fdc"

    return LambdaContext()
