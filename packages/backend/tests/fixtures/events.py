import json
import time
import uuid
from typing import Any, Dict, Optional


def api_event(
    method: str,
    path: str,
    user_id: Optional[str] = None,
    body: Optional[Dict[str, Any]] = None,
    query: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """API Gateway REST proxy event, authenticated by a Cognito user pool authorizer when user_id is set."""
    request_context: Dict[str, Any] = {
        "httpMethod": method,
        "path": path,
        "resourcePath": path,
        "stage": "test",
        "requestId": str(uuid.uuid4()),
    }
    if user_id:
        request_context["authorizer"] = {
            "claims": {
                "sub": user_id,
                "email": f"{user_id}@example.com",
                "origin_jti": str(uuid.uuid4()),
                "auth_time": "1773576000",
                "exp": str(int(time.time()) + 3600),
            }
        }
    return {
        "resource": path,
        "path": path,
        "httpMethod": method,
        "headers": {"Content-Type": "application/json"},
        "multiValueHeaders": {"Content-Type": ["application/json"]},
        "queryStringParameters": query,
        "multiValueQueryStringParameters": {k: [v] for k, v in query.items()} if query else None,
        "pathParameters": None,
        "stageVariables": None,
        "requestContext": request_context,
        "body": json.dumps(body) if body is not None else None,
        "isBase64Encoded": False,
    }


def post_confirmation_event(user_id: str, email: str, trigger: str = "PostConfirmation_ConfirmSignUp") -> Dict[str, Any]:
    return {
        "version": "1",
        "region": "eu-west-3",
        "userPoolId": "eu-west-3_test",
        "userName": email,
        "triggerSource": trigger,
        "request": {"userAttributes": {"sub": user_id, "email": email, "email_verified": "true"}},
        "response": {},
    }


def body_of(response: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(response["body"])
