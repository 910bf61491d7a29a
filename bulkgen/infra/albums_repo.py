# -*- coding: utf-8 -*-
import json
import logging
import os
from typing import Any, Dict, List, Optional

from bulkgen.domain.models import Album

log = logging.getLogger("albums_repo")

ALBUM_FILE = "album.json"


class AlbumRepository:
    """
    File-based album store. One directory per album under output_dir:

      <output_dir>/<album_id>/album.json
      <output_dir>/<album_id>/<images...>
    """

    def __init__(self, output_dir: str):
        self.output_dir = output_dir
        os.makedirs(self.output_dir, exist_ok=True)

    def album_dir(self, album_id: str) -> str:
        return os.path.join(self.output_dir, album_id)

    def album_path(self, album_id: str) -> str:
        return os.path.join(self.album_dir(album_id), ALBUM_FILE)

    def list_ids(self) -> List[str]:
        if not os.path.exists(self.output_dir):
            return []
        return sorted(
            name for name in os.listdir(self.output_dir)
            if os.path.isfile(os.path.join(self.output_dir, name, ALBUM_FILE))
        )

    def load(self, album_id: str) -> Optional[Album]:
        path = self.album_path(album_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.error("Unreadable album record %s: %s", path, e)
            return None
        if not isinstance(data, dict) or "id" not in data:
            log.error("Malformed album record %s", path)
            return None
        return Album.from_dict(data)

    def save(self, album: Album) -> None:
        self.save_dict(album.to_dict())

    def save_dict(self, data: Dict[str, Any]) -> None:
        """
        Atomically write the album record to reduce risk of corruption.
        """
        path = self.album_path(str(data["id"]))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            log.error("Failed to write album record %s: %s", path, e)
