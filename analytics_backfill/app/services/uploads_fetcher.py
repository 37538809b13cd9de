from __future__ import annotations

import logging

from analytics_backfill.app.errors import ApiError
from analytics_backfill.app.services.http_client import (
    HttpResponse,
    HttpTransportError,
    JsonTransport,
    as_dict,
    as_list,
    request_json,
)

LOGGER = logging.getLogger("analytics_backfill.uploads_fetcher")

PLAYLIST_PAGE_SIZE = 50


class UploadsFetcher:
    """Lists every video id in a channel's uploads playlist via the Data API."""

    def __init__(
        self,
        *,
        data_api_url: str = "https://youtube.googleapis.com/youtube/v3",
        timeout_seconds: float = 30.0,
        transport: JsonTransport = request_json,
        max_pages: int = 1000,
    ) -> None:
        self._data_api_url = data_api_url.rstrip("/")
        self._timeout_seconds = max(1.0, timeout_seconds)
        self._transport = transport
        self._max_pages = max(1, max_pages)

    def list_video_ids(self, token: str, scope_id: str) -> list[str]:
        playlist_id = self._uploads_playlist_id(token, scope_id)
        video_ids: list[str] = []
        page_token = ""
        for _ in range(self._max_pages):
            params = {
                "part": "contentDetails",
                "playlistId": playlist_id,
                "maxResults": str(PLAYLIST_PAGE_SIZE),
            }
            if page_token:
                params["pageToken"] = page_token
            payload = self._get(token, "playlistItems", params).payload
            for item in as_list(payload.get("items")):
                video_id = as_dict(as_dict(item).get("contentDetails")).get("videoId")
                if isinstance(video_id, str) and video_id and video_id not in video_ids:
                    video_ids.append(video_id)
            page_token = str(payload.get("nextPageToken") or "")
            if not page_token:
                break
        else:
            LOGGER.warning(
                "uploads listing truncated scope_id=%s pages=%s videos=%s",
                scope_id,
                self._max_pages,
                len(video_ids),
            )

        LOGGER.info("uploads listed scope_id=%s videos=%s", scope_id, len(video_ids))
        return video_ids

    def _uploads_playlist_id(self, token: str, scope_id: str) -> str:
        payload = self._get(token, "channels", {"part": "contentDetails", "id": scope_id}).payload
        items = as_list(payload.get("items"))
        first = as_dict(items[0]) if items else {}
        uploads = as_dict(as_dict(first.get("contentDetails")).get("relatedPlaylists")).get(
            "uploads"
        )
        if not isinstance(uploads, str) or not uploads:
            raise ApiError(404, f"No uploads playlist found for channel {scope_id}")
        return uploads

    def _get(self, token: str, resource: str, params: dict[str, str]) -> HttpResponse:
        try:
            response = self._transport(
                "GET",
                f"{self._data_api_url}/{resource}",
                timeout_seconds=self._timeout_seconds,
                params=params,
                headers={"authorization": f"Bearer {token}"},
            )
        except HttpTransportError as exc:
            raise ApiError(0, str(exc)) from exc
        if not response.ok:
            raise ApiError(response.status_code, response.raw_body)
        return response
