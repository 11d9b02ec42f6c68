# app/services/ipfs.py
import requests
from requests.exceptions import RequestException
import logging
from urllib.parse import urljoin

from pydantic import ValidationError

from app.core.config import settings
from app.core.errors import InputValidationError, NotFoundError
from app.api.models.listing import ApiMetadata

logger = logging.getLogger(__name__)


def _metadata_url(cid: str) -> str:
    base = str(settings.IPFS_GATEWAY_URL)
    if not base.endswith("/"):
        base += "/"
    return urljoin(base, cid)


def get_api_metadata(cid: str) -> ApiMetadata:
    """
    Fetches and validates API metadata from the content-addressed store.

    Fails closed: a missing document, an unreachable gateway and a document
    without a usable endpoint/cost all surface as ApiNotFound.

    Args:
        cid: Content identifier of the metadata JSON

    Returns:
        The validated ApiMetadata

    Raises:
        InputValidationError: If cid is empty
        NotFoundError: If the metadata cannot be fetched or is malformed
    """
    if not cid or not cid.strip():
        raise InputValidationError("Missing CID", code="MissingCid")

    api_url = _metadata_url(cid.strip())
    try:
        response = requests.get(api_url, timeout=settings.IPFS_TIMEOUT_SECONDS)
        if response.status_code == 404:
            raise NotFoundError(f"Cannot find API {cid}", code="ApiNotFound")
        response.raise_for_status()
        document = response.json()

    except RequestException as e:
        logger.error(f"Error fetching API metadata from content store ({api_url}): {e}")
        raise NotFoundError(f"Cannot find API {cid}", code="ApiNotFound") from e
    except ValueError as e:
        # JSON decoding errors
        logger.warning(f"API metadata for {cid} is not valid JSON: {e}")
        raise NotFoundError(f"Cannot find API {cid}", code="ApiNotFound") from e

    if not isinstance(document, dict):
        logger.warning(f"Unexpected metadata structure for {cid}: {type(document)}")
        raise NotFoundError(f"Cannot find API {cid}", code="ApiNotFound")

    try:
        return ApiMetadata.model_validate(document)
    except ValidationError as e:
        logger.warning(f"API metadata for {cid} failed validation: {e}")
        raise NotFoundError(
            f"API metadata for {cid} is malformed",
            code="ApiNotFound",
            details=[err["loc"][0] for err in e.errors() if err.get("loc")],
        ) from e
