import logging
from typing import Optional, Protocol
from urllib.parse import quote

import requests

from fieldsync.core.config import settings
from fieldsync.core.errors import FetchError

logger = logging.getLogger("fieldsync.kizeo")


class MediaFetcher(Protocol):
    def fetch(self, form_id: int, data_id: int, media_name: str) -> bytes:
        ...

    def fetch_pdf(self, form_id: int, data_id: int) -> bytes:
        ...


class KizeoClient:
    """Binary downloads from the mobile-forms REST API."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[int] = None,
        pdf_timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_url = (api_url or settings.KIZEO_API_URL).rstrip("/")
        self.token = token if token is not None else settings.KIZEO_API_TOKEN
        self.timeout = timeout or settings.KIZEO_TIMEOUT_SECONDS
        self.pdf_timeout = pdf_timeout or settings.KIZEO_PDF_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def _download(self, endpoint: str, timeout: int, context: dict) -> bytes:
        if not self.token:
            logger.warning("KIZEO_API_TOKEN not configured")
            raise FetchError("KIZEO_API_TOKEN non configure")
        url = f"{self.api_url}{endpoint}"
        try:
            resp = self.session.get(url, headers={"Authorization": self.token}, timeout=timeout)
        except requests.RequestException as exc:
            logger.warning("kizeo request failed endpoint=%s error=%s", endpoint, exc)
            raise FetchError(f"Erreur reseau: {exc}") from exc
        if resp.status_code != 200:
            logger.warning("kizeo unexpected status endpoint=%s status_code=%s", endpoint, resp.status_code)
            raise FetchError(f"HTTP {resp.status_code}", status_code=resp.status_code)
        content = resp.content
        if not content:
            raise FetchError("API a retourne un contenu vide", status_code=resp.status_code)
        logger.debug("kizeo download ok endpoint=%s size=%s %s", endpoint, len(content), context)
        return content

    def fetch(self, form_id: int, data_id: int, media_name: str) -> bytes:
        endpoint = f"/forms/{int(form_id)}/data/{int(data_id)}/medias/{quote(media_name, safe='')}"
        return self._download(endpoint, self.timeout, {"media_name": media_name})

    def fetch_pdf(self, form_id: int, data_id: int) -> bytes:
        endpoint = f"/forms/{int(form_id)}/data/{int(data_id)}/pdf"
        return self._download(endpoint, self.pdf_timeout, {})
