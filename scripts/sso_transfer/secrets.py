"""Secret reference resolution for database passwords and the signing key.

A configured value is either a literal or a reference to where the secret
actually lives. References are resolved once, at config load time.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger("sso_transfer.secrets")

_AWS_PREFIX = "aws-secret://"
_GCP_PREFIX = "gcp-secret://"
_FILE_PREFIX = "file://"


def resolve_secret(value: str) -> str:
    """Resolve a secret reference to its plaintext value.

    Supported formats:
      - "aws-secret://secret-name"         -> AWS Secrets Manager
      - "aws-secret://secret-name#key"     -> AWS Secrets Manager (JSON key)
      - "gcp-secret://project/secret/ver"  -> GCP Secret Manager
      - "file:///path/to/AuthKey.p8"       -> local file contents
      - anything else                      -> returned as-is (env var / literal)
    """
    if value.startswith(_AWS_PREFIX):
        return _resolve_aws_secret(value[len(_AWS_PREFIX):])
    if value.startswith(_GCP_PREFIX):
        return _resolve_gcp_secret(value[len(_GCP_PREFIX):])
    if value.startswith(_FILE_PREFIX):
        return _resolve_file_secret(value[len(_FILE_PREFIX):])
    return value


def _resolve_aws_secret(ref: str) -> str:
    """Fetch a secret from AWS Secrets Manager.

    ref format: "secret-name" or "secret-name#json_key"
    """
    import boto3

    secret_name, _, json_key = ref.partition("#")
    client = boto3.client(
        "secretsmanager", region_name=os.environ.get("AWS_REGION", "us-east-1")
    )
    secret_string = client.get_secret_value(SecretId=secret_name)["SecretString"]

    if json_key:
        return str(json.loads(secret_string)[json_key])
    return secret_string


def _resolve_gcp_secret(ref: str) -> str:
    """Fetch a secret from GCP Secret Manager.

    ref format: "projects/PROJECT/secrets/NAME/versions/VERSION"
             or "NAME" (GCP_PROJECT_ID + latest version)
    """
    from google.cloud import secretmanager

    if ref.startswith("projects/"):
        name = ref
    else:
        project = os.environ.get("GCP_PROJECT_ID", "")
        if not project:
            raise RuntimeError(
                f"Cannot resolve gcp-secret://{ref} without GCP_PROJECT_ID"
            )
        name = f"projects/{project}/secrets/{ref}/versions/latest"

    client = secretmanager.SecretManagerServiceClient()
    response = client.access_secret_version(request={"name": name})
    return response.payload.data.decode("UTF-8")


def _resolve_file_secret(path: str) -> str:
    logger.debug("Reading secret from file %s", path)
    return Path(path).expanduser().read_text(encoding="utf-8")


def resolve_database_url(role: str) -> str:
    """Resolve the connection URL for the ``read`` or ``write`` database.

    DATABASE_<ROLE>_URL wins. Otherwise the URL is assembled from
    PG_<ROLE>_* variables, each falling back to the shared PG_* variable.
    """
    role = role.upper()
    url = os.environ.get(f"DATABASE_{role}_URL", "")
    if url:
        return resolve_secret(url)

    def _pg(name: str, default: str) -> str:
        return os.environ.get(f"PG_{role}_{name}") or os.environ.get(f"PG_{name}", default)

    host = _pg("HOST", "localhost")
    port = _pg("PORT", "5432")
    user = _pg("USER", "migration")
    password = resolve_secret(_pg("PASSWORD", ""))
    database = _pg("DATABASE", "accounts")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"
