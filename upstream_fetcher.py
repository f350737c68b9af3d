import logging
from typing import List, Optional

import httpx

from config import UpstreamConfig
from date_chunker import DateChunk
from exceptions import UpstreamLogicalError, UpstreamTransportError

logger = logging.getLogger(__name__)


class UpstreamFetcher:
    """Fetches raw feedback items for one date chunk. No retries at this layer."""

    def __init__(self, config: UpstreamConfig, client: Optional[httpx.Client] = None):
        self.config = config
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=config.timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if self._owns_client:
            self.client.close()

    def fetch_chunk(self, chunk: DateChunk) -> List[dict]:
        """GET one chunk and unwrap the {code, data} envelope."""
        params = chunk.as_params()

        try:
            response = self.client.get(self.config.base_url, params=params, timeout=self.config.timeout)
        except httpx.TimeoutException as e:
            raise UpstreamTransportError(f"Upstream timed out for {params['from']}..{params['to']}: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamTransportError(f"Upstream request failed for {params['from']}..{params['to']}: {e}") from e

        if not response.is_success:
            raise UpstreamTransportError(
                f"Upstream API error: {response.status_code}", status_code=response.status_code
            )

        try:
            envelope = response.json()
        except ValueError as e:
            raise UpstreamLogicalError(f"Upstream returned invalid JSON: {e}") from e

        if not isinstance(envelope, dict) or "code" not in envelope:
            raise UpstreamLogicalError("Upstream response missing 'code' envelope")

        code = envelope["code"]
        if code != 0:
            raise UpstreamLogicalError(f"Upstream API returned error code: {code}", code=code)

        data = envelope.get("data") or []
        if not isinstance(data, list):
            raise UpstreamLogicalError("Upstream 'data' is not a list")

        logger.debug(f"Fetched {len(data)} items for {params['from']}..{params['to']}")
        return data
