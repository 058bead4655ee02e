"""
Tally HTTP client.

Posts XML export requests to Tally's HTTP interface and parses the
responses into nested dict trees for the normalizers.
"""
from __future__ import annotations
import re
from datetime import date
from typing import Iterable, Optional
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import unescape
import requests
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from loguru import logger

from .config import TallySyncConfig
from .parsers.base import extract_entities, extract_text, parse_xml
from .requests import render_request

DEFAULT_HEADERS = {
    "Content-Type": "application/xml; charset=utf-8",
    "Accept": "application/xml",
    "User-Agent": "tally-sync/1.0",
}

_TALLY_ERROR_MARKER = re.compile(r"<STATUS>\s*0\s*</STATUS>|<LINEERROR>|<ERRORMSG>", re.IGNORECASE)


class TallyConnectionError(Exception):
    """Tally could not be reached or the HTTP exchange failed."""


class TallyResponseError(Exception):
    """Tally answered with an error document instead of data."""


class TallySyncClient:
    """
    HTTP client for the Tally XML API.

    One request is one POST; the full body is read before parsing. Retries
    are off by default (TALLY_RETRY_ATTEMPTS=1) because the daily schedule
    re-runs anything that failed.
    """

    def __init__(self, config: Optional[TallySyncConfig] = None):
        self.config = config or TallySyncConfig.from_env()
        self.base_url = self.config.tally_url.rstrip("/")
        self.company = self.config.tally_company
        self.session = requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        self._retrying = Retrying(
            wait=wait_exponential(multiplier=self.config.retry_delay, min=1, max=30),
            stop=stop_after_attempt(self.config.retry_attempts),
            retry=retry_if_exception_type(TallyConnectionError),
            before_sleep=lambda retry_state: logger.warning(
                f"Tally request failed ({retry_state.outcome.exception()}); "
                f"attempt {retry_state.attempt_number + 1} of {self.config.retry_attempts}"
            ),
            reraise=True,
        )

    def post_xml(self, xml: str, timeout: Optional[int] = None) -> str:
        """
        Post XML to Tally and return the response text.

        Raises:
            TallyConnectionError: If the request cannot be completed
            TallyResponseError: If Tally answers with an error document
        """
        return self._retrying(self._post, xml, timeout or self.config.request_timeout)

    def _post(self, xml: str, timeout: int) -> str:
        try:
            response = self.session.post(self.base_url, data=xml.encode("utf-8"), timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise self._transport_error(e, timeout) from e

        text = response.text
        if _TALLY_ERROR_MARKER.search(text):
            raise TallyResponseError(f"Tally rejected the request: {self._extract_error(text)}")
        return text

    def _transport_error(self, error: requests.RequestException, timeout: int) -> TallyConnectionError:
        if isinstance(error, requests.Timeout):
            reason = f"timeout after {timeout}s"
        elif isinstance(error, requests.ConnectionError):
            reason = f"Cannot connect to Tally at {self.base_url}"
        else:
            reason = "HTTP request failed"
        message = f"{reason}: {error}"
        logger.error(message)
        return TallyConnectionError(message)

    @staticmethod
    def _extract_error(text: str) -> str:
        """First error message in a Tally error document."""
        for tag in ("LINEERROR", "ERRORMSG", "ERROR"):
            found = re.search(rf"<{tag}>(.*?)</{tag}>", text, re.IGNORECASE | re.DOTALL)
            if found and found.group(1).strip():
                return unescape(found.group(1).strip(), {"&apos;": "'", "&quot;": '"'})
        return "request rejected"

    def parse_response(self, text: str) -> dict:
        """
        Parse a response body into a dict tree.

        Malformed XML yields an empty tree with a warning; the normalizers
        then see zero records.
        """
        try:
            tree = parse_xml(text)
        except ExpatError as e:
            logger.warning(f"Could not parse Tally response ({len(text)} chars): {e}")
            return {}

        envelope = tree.get("ENVELOPE") if isinstance(tree, dict) else None
        if isinstance(envelope, dict) and envelope.get("ERROR") is not None:
            raise TallyResponseError(f"Tally error: {extract_text(envelope['ERROR'])}")
        return tree

    def fetch(
        self,
        entity: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        voucher_types: Optional[Iterable[str]] = None,
    ) -> dict:
        """Request one entity collection and return the parsed tree."""
        xml_request = render_request(
            entity,
            company=self.company,
            from_date=from_date,
            to_date=to_date,
            voucher_types=voucher_types,
        )
        logger.debug(f"Requesting {entity} from {self.base_url}")
        text = self.post_xml(xml_request)
        logger.debug(f"Received {len(text)} chars for {entity}")
        return self.parse_response(text)

    def test_connection(self) -> dict:
        """Ask Tally for its company list and report whether it answered."""
        summary = {"url": self.base_url, "company": self.company or "(active company)"}
        try:
            tree = self.parse_response(
                self.post_xml(render_request("company", company=self.company), timeout=30)
            )
        except (TallyConnectionError, TallyResponseError) as e:
            return {**summary, "status": "failed", "error": str(e)}

        if not tree:
            return {**summary, "status": "connected_unknown", "message": "Response was not valid XML"}
        companies = extract_entities(tree, "COMPANY")
        return {
            **summary,
            "status": "connected",
            "companies_found": len(companies),
            "companies": [extract_text(c.get("NAME")) for c in companies if isinstance(c, dict)],
        }

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
