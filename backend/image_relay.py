import hashlib
import os
import time
from typing import Dict, Optional

import requests

CLOUDINARY_API_BASE = "https://api.cloudinary.com/v1_1"


class ImageRelayError(Exception):
    pass


class ImageRelay:
    """Push staged uploads to Cloudinary and hand back the hosted URL.

    The staged file is removed once the upload attempt is over, whether it
    succeeded or not. Cleanup failures are logged and never replace the
    upload result.
    """

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        logger,
        timeout: float = 30,
        base_url: str = CLOUDINARY_API_BASE,
    ):
        self.cloud_name = (cloud_name or "").strip()
        self.api_key = (api_key or "").strip()
        self.api_secret = (api_secret or "").strip()
        self.logger = logger
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def sign(self, params: Dict[str, str]) -> str:
        to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params) if params[key] != "")
        return hashlib.sha1(f"{to_sign}{self.api_secret}".encode("utf-8")).hexdigest()

    def upload(self, local_path: str, public_id: str, folder: Optional[str] = None) -> Dict[str, str]:
        try:
            return self._send(local_path, public_id, folder)
        finally:
            self.discard(local_path)

    def _send(self, local_path: str, public_id: str, folder: Optional[str]) -> Dict[str, str]:
        if not self.configured:
            raise ImageRelayError("Image hosting is not configured.")

        params = {
            "folder": folder or "",
            "public_id": public_id,
            "timestamp": str(int(time.time())),
        }
        payload = {key: value for key, value in params.items() if value != ""}
        payload["api_key"] = self.api_key
        payload["signature"] = self.sign(params)

        url = f"{self.base_url}/{self.cloud_name}/image/upload"
        self.logger.info("Uploading %s to image host folder %s", public_id, folder or "/")

        try:
            with open(local_path, "rb") as image_file:
                response = requests.post(
                    url,
                    data=payload,
                    files={"file": image_file},
                    timeout=self.timeout,
                )
        except (OSError, requests.RequestException) as exc:
            self.logger.error("Image upload failed for %s: %s", public_id, exc)
            raise ImageRelayError("Image upload failed.") from exc

        if not response.ok:
            self.logger.error(
                "Image host rejected %s with %s: %s",
                public_id,
                response.status_code,
                response.text,
            )
            raise ImageRelayError("Image upload failed.")

        try:
            result = response.json()
        except ValueError as exc:
            raise ImageRelayError("Image host returned an unreadable response.") from exc

        secure_url = result.get("secure_url")
        if not secure_url:
            raise ImageRelayError("Image host did not return an image URL.")

        return {"url": secure_url, "publicId": result.get("public_id") or public_id}

    def destroy(self, public_id: str) -> bool:
        """Best-effort removal of a hosted image; failures are logged only."""
        if not self.configured or not public_id:
            return False

        params = {"public_id": public_id, "timestamp": str(int(time.time()))}
        payload = dict(params)
        payload["api_key"] = self.api_key
        payload["signature"] = self.sign(params)

        url = f"{self.base_url}/{self.cloud_name}/image/destroy"
        try:
            response = requests.post(url, data=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            self.logger.warning("Unable to remove hosted image %s: %s", public_id, exc)
            return False

        if not response.ok:
            self.logger.warning(
                "Image host refused to remove %s with %s: %s",
                public_id,
                response.status_code,
                response.text,
            )
            return False
        return True

    def discard(self, local_path: str):
        try:
            os.remove(local_path)
        except FileNotFoundError:
            return
        except OSError as exc:
            self.logger.warning("Unable to remove staged upload %s: %s", local_path, exc)
