import boto3
import os
import re
from boto3.dynamodb.types import TypeSerializer
from boto3.resources.base import ServiceResource
from botocore.exceptions import BotoCoreError, ClientError
from contextlib import contextmanager
from functools import cache
from typing import Any, Iterator, Optional

from aws_lambda_powertools import Logger

from portal_core.models.errors import PersistenceFailure

logger = Logger()

_serializer = TypeSerializer()


class TransactionConflict(Exception):
    """A TransactWriteItems call was cancelled because conditions failed"""

    def __init__(self, failed_indexes: list[int]):
        self.failed_indexes = failed_indexes
        super().__init__(f"Transaction conditions failed at items {failed_indexes}")


def get_region_name() -> str:
    """
    Get the AWS region name from the environment variable or default to 'eu-west-3'.

    Returns:
        str: The AWS region name.
    """
    return os.getenv("AWS_REGION", "eu-west-3")


@cache
def get_dynamodb_resource() -> ServiceResource:
    """
    Get a DynamoDB resource instance.

    Returns:
        boto3.resources.base.ServiceResource: The DynamoDB resource.
    """
    return boto3.resource("dynamodb", region_name=get_region_name())


@cache
def get_ddb_table(table_name: str) -> Any:
    return get_dynamodb_resource().Table(table_name)


@cache
def get_dynamodb_client() -> Any:
    """Low-level DynamoDB client; transaction items carry typed attribute values."""
    return boto3.client("dynamodb", region_name=get_region_name())


def to_attribute_values(values: dict[str, Any]) -> dict[str, Any]:
    """Serialize plain python values into typed DynamoDB attribute values."""
    return {key: _serializer.serialize(value) for key, value in values.items()}


def is_conditional_check_failure(error: Exception) -> bool:
    return isinstance(error, ClientError) and error.response["Error"]["Code"] == "ConditionalCheckFailedException"


def _failed_transaction_indexes(error: ClientError, item_count: int) -> list[int]:
    reasons = error.response.get("CancellationReasons")
    if reasons:
        return [
            index
            for index, reason in enumerate(reasons)
            if reason.get("Code") == "ConditionalCheckFailed"
        ]
    # Older endpoints only list the reasons in the message: "[None, ConditionalCheckFailed]"
    match = re.search(r"\[(.*)\]", error.response["Error"].get("Message", ""))
    if not match:
        return []
    codes = [code.strip() for code in match.group(1).split(",")]
    return [index for index, code in enumerate(codes[:item_count]) if code == "ConditionalCheckFailed"]


def transact_write(items: list[dict[str, Any]], client: Optional[Any] = None) -> None:
    """
    Apply all items atomically.

    Raises:
        TransactionConflict: one or more ConditionExpressions failed, nothing was written.
        PersistenceFailure: any other DynamoDB or connection error.
    """
    client = client or get_dynamodb_client()
    try:
        client.transact_write_items(TransactItems=items)
    except ClientError as e:
        if e.response["Error"]["Code"] == "TransactionCanceledException":
            failed = _failed_transaction_indexes(e, len(items))
            if failed:
                raise TransactionConflict(failed) from e
        logger.error(f"Transaction failed: {e.response['Error']['Message']}")
        raise PersistenceFailure(f"DynamoDB transaction failed: {e.response['Error']['Code']}") from e
    except BotoCoreError as e:
        logger.error(f"AWS connection error: {str(e)}")
        raise PersistenceFailure(f"AWS connection error: {str(e)}") from e


def persistence_failure(error: Exception, action: str) -> PersistenceFailure:
    """Log a store error and build the PersistenceFailure to raise in its place."""
    if isinstance(error, ClientError):
        logger.error(f"Error {action}: {error.response['Error']['Message']}")
        return PersistenceFailure(f"DynamoDB error while {action}: {error.response['Error']['Code']}")
    logger.error(f"AWS connection error while {action}: {str(error)}")
    return PersistenceFailure(f"AWS connection error while {action}: {str(error)}")


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """Re-raise DynamoDB and connection errors raised while performing `action` as PersistenceFailure."""
    try:
        yield
    except (ClientError, BotoCoreError) as e:
        raise persistence_failure(e, action) from e
