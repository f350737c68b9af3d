import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from models import MAX_TAGS, Category, FeedbackRecord, FeedbackStatus, UpstreamFeedbackItem

logger = logging.getLogger(__name__)

DEFAULT_AVATAR = "https://api.dicebear.com/7.x/avataaars/svg?seed=default"
DEFAULT_RATING = 3


# ============================================================================
# DEDUPLICATION
# ============================================================================

def deduplicate_items(items: Iterable[dict]) -> List[dict]:
    """Merge chunk results by upstream id; a later occurrence replaces an earlier one."""
    merged: Dict[int, dict] = {}
    skipped = 0

    for item in items:
        item_id = item.get("id") if isinstance(item, dict) else None
        if item_id is None:
            skipped += 1
            continue
        merged[item_id] = item

    if skipped:
        logger.warning(f"Skipped {skipped} upstream items without an id")

    return list(merged.values())


# ============================================================================
# NORMALIZER
# ============================================================================

class FeedbackNormalizer:
    """Maps upstream items to canonical FeedbackRecords with deterministic derived fields."""

    def __init__(self):
        self.category_map = self._load_category_map()
        self.status_map = self._load_status_map()
        self.tag_keywords = self._load_tag_keywords()

    def _load_category_map(self) -> Dict[str, Category]:
        """Upstream free-text type -> canonical category."""
        return {
            'moment': Category.UX_UI,
            'bug': Category.BUG,
            'feature': Category.FEATURE,
            'performance': Category.PERFORMANCE,
        }

    def _load_status_map(self) -> Dict[int, FeedbackStatus]:
        return {
            1: FeedbackStatus.NEW,
            2: FeedbackStatus.IN_PROGRESS,
            3: FeedbackStatus.RESOLVED,
        }

    def _load_tag_keywords(self) -> List[str]:
        """Keywords promoted to tags when they appear in the content."""
        return [
            # Community moderation topics
            '美甲', '客拍', '塑形',
            # Account and review actions
            '审核', '删除', '封号', '违规',
        ]

    def map_category(self, item_type: Optional[str]) -> Category:
        if not item_type:
            return Category.UNCLASSIFIED
        return self.category_map.get(item_type.lower(), Category.UNCLASSIFIED)

    def map_status(self, status: Optional[int]) -> FeedbackStatus:
        return self.status_map.get(status, FeedbackStatus.NEW)

    def extract_tags(self, content: str, item_type: Optional[str]) -> List[str]:
        """Crude keyword matching: capitalized type first, then keyword hits, max 5."""
        tags = []
        if item_type:
            tags.append(item_type[0].upper() + item_type[1:])

        for keyword in self.tag_keywords:
            if keyword in content:
                tags.append(keyword)

        return tags[:MAX_TAGS]

    def first_image(self, images: Optional[str]) -> str:
        """First URL of a comma-separated list."""
        if not images:
            return DEFAULT_AVATAR
        return images.split(',')[0].strip() or DEFAULT_AVATAR

    def parse_timestamp(self, value: Union[int, float, str]) -> datetime:
        """ISO-8601 text or epoch milliseconds. Values without an offset are read as UTC."""
        if isinstance(value, (int, float)) or value.isdigit():
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)

        if value.endswith('Z'):
            value = value[:-1] + '+00:00'
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def normalize(self, item: UpstreamFeedbackItem) -> FeedbackRecord:
        content = item.content or item.moments_text or ''
        return FeedbackRecord(
            id=f"f-{item.id}",
            user_id=str(item.user_id) if item.user_id is not None else '',
            user_name=item.nick_name or 'Anonymous',
            user_avatar=self.first_image(item.avatar or item.user_img),
            date=self.parse_timestamp(item.create_time),
            content=content,
            rating=DEFAULT_RATING,
            category=self.map_category(item.type),
            tags=self.extract_tags(content, item.type),
            status=self.map_status(item.status),
            type=item.type,
            image_url=item.image_url,
            moments_text=item.moments_text,
            user_type=item.user_type,
            content_type=item.content_type,
            app_version=item.app_version,
        )

    def normalize_items(self, items: Iterable[dict]) -> List[FeedbackRecord]:
        """Normalize raw upstream dicts, skipping records without a usable id or timestamp."""
        records = []
        invalid = 0

        for raw in items:
            try:
                records.append(self.normalize(UpstreamFeedbackItem.model_validate(raw)))
            except (ValidationError, ValueError, OverflowError, OSError) as e:
                invalid += 1
                logger.warning(f"Skipping malformed upstream item {raw.get('id', '?')}: {e}")

        if invalid:
            logger.warning(f"Normalized {len(records)} items, {invalid} malformed items skipped")

        return records
