"""
Media Selector — Sticker & Media Vault
========================================

On-disk catalogue of things the warmed account can send besides text:

  <vault>/stickers/<category>/<name>.webp     category = emotion label
  <vault>/media/<file>  + <vault>/media/media.json
      [{"id", "filename", "mime_type", "context"}]   context = what the image shows

Selection is uniform over an in-memory snapshot taken by reload(). The
snapshot is NOT refreshed automatically: anything that adds or deletes files
must call reload() afterwards (the add/delete helpers here do).

Files that vanished since the last reload are skipped at selection time.
"""

import io
import os
import json
import uuid
import random
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional

from PIL import Image

logger = logging.getLogger(__name__)

STICKER_EXTENSIONS = {".webp", ".png", ".jpg", ".jpeg", ".gif"}
STICKER_SIZE = (512, 512)
MEDIA_INDEX = "media.json"


@dataclass(frozen=True)
class MediaItem:
    id: str
    filename: str
    mime_type: str
    context: str
    path: Path

    def read_bytes(self) -> Optional[bytes]:
        try:
            return self.path.read_bytes()
        except OSError as e:
            logger.warning(f"[MediaSelector] Cannot read media {self.filename}: {e}")
            return None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["path"] = str(self.path)
        return data


def to_webp_sticker(data: bytes) -> bytes:
    """Normalise any still image to a 512x512 transparent WebP sticker."""
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGBA")
        img.thumbnail(STICKER_SIZE)
        canvas = Image.new("RGBA", STICKER_SIZE, (0, 0, 0, 0))
        offset = ((STICKER_SIZE[0] - img.width) // 2, (STICKER_SIZE[1] - img.height) // 2)
        canvas.paste(img, offset)
        out = io.BytesIO()
        canvas.save(out, format="WEBP")
        return out.getvalue()


class MediaSelector:
    def __init__(self, vault_dir: str, rng: Optional[random.Random] = None):
        self.vault_dir = Path(vault_dir)
        self.sticker_dir = self.vault_dir / "stickers"
        self.media_dir = self.vault_dir / "media"
        self.sticker_dir.mkdir(parents=True, exist_ok=True)
        self.media_dir.mkdir(parents=True, exist_ok=True)
        self.rng = rng or random.Random()

        self._stickers: Dict[str, List[Path]] = {}
        self._media: List[MediaItem] = []
        self.reload()

    # ── Snapshot ──────────────────────────────────────────────────────────────

    def reload(self):
        stickers: Dict[str, List[Path]] = {}
        for category_dir in sorted(p for p in self.sticker_dir.iterdir() if p.is_dir()):
            files = sorted(
                f for f in category_dir.iterdir()
                if f.is_file() and f.suffix.lower() in STICKER_EXTENSIONS
            )
            stickers[category_dir.name] = files

        media = []
        for entry in self._load_media_index():
            path = self.media_dir / entry.get("filename", "")
            media.append(MediaItem(
                id=entry.get("id", ""),
                filename=entry.get("filename", ""),
                mime_type=entry.get("mime_type", "image/jpeg"),
                context=entry.get("context", ""),
                path=path,
            ))

        self._stickers = stickers
        self._media = media
        logger.info(
            f"[MediaSelector] Catalogue loaded: {sum(len(v) for v in stickers.values())} stickers "
            f"in {len(stickers)} categories, {len(media)} media items"
        )

    def categories(self) -> Dict[str, int]:
        return {name: len(files) for name, files in self._stickers.items()}

    def list_media(self) -> List[MediaItem]:
        return list(self._media)

    # ── Selection ─────────────────────────────────────────────────────────────

    def select_random_sticker(self, category: str) -> Optional[Path]:
        candidates = [p for p in self._stickers.get(category, []) if p.exists()]
        if not candidates:
            return None
        return self.rng.choice(candidates)

    def select_random_media(self) -> Optional[MediaItem]:
        candidates = [m for m in self._media if m.path.exists()]
        if not candidates:
            return None
        return self.rng.choice(candidates)

    # ── Catalogue mutation ────────────────────────────────────────────────────

    def add_sticker(self, category: str, filename: str, data: bytes) -> Path:
        target_dir = self.sticker_dir / category
        target_dir.mkdir(parents=True, exist_ok=True)
        stem = Path(filename).stem or uuid.uuid4().hex[:8]
        path = target_dir / f"{stem}.webp"
        path.write_bytes(to_webp_sticker(data))
        self.reload()
        return path

    def delete_sticker(self, category: str, filename: str) -> bool:
        path = self.sticker_dir / category / Path(filename).name
        if not path.exists():
            return False
        path.unlink()
        self.reload()
        return True

    def add_media(self, filename: str, data: bytes, mime_type: str, context: str = "") -> MediaItem:
        media_id = uuid.uuid4().hex[:12]
        stored_name = f"{media_id}_{Path(filename).name}"
        (self.media_dir / stored_name).write_bytes(data)
        index = self._load_media_index()
        index.append({"id": media_id, "filename": stored_name, "mime_type": mime_type, "context": context})
        self._save_media_index(index)
        self.reload()
        return next(m for m in self._media if m.id == media_id)

    def delete_media(self, media_id: str) -> bool:
        index = self._load_media_index()
        entry = next((e for e in index if e.get("id") == media_id), None)
        if entry is None:
            return False
        path = self.media_dir / entry.get("filename", "")
        if path.exists():
            path.unlink()
        self._save_media_index([e for e in index if e.get("id") != media_id])
        self.reload()
        return True

    def update_media_context(self, media_id: str, context: str) -> bool:
        index = self._load_media_index()
        for entry in index:
            if entry.get("id") == media_id:
                entry["context"] = context
                self._save_media_index(index)
                self.reload()
                return True
        return False

    # ── Index file ────────────────────────────────────────────────────────────

    def _load_media_index(self) -> List[Dict]:
        path = self.media_dir / MEDIA_INDEX
        if not path.exists():
            return []
        try:
            with open(path, "r") as f:
                data = json.load(f)
            return data if isinstance(data, list) else []
        except (OSError, ValueError) as e:
            logger.warning(f"[MediaSelector] Media index unreadable, treating as empty: {e}")
            return []

    def _save_media_index(self, index: List[Dict]):
        tmp = self.media_dir / f"{MEDIA_INDEX}.tmp"
        with open(tmp, "w") as f:
            json.dump(index, f, indent=2)
        os.replace(tmp, self.media_dir / MEDIA_INDEX)
