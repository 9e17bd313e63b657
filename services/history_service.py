"""
Chapter history service.

Builds the list of already-resolved chapters of a room so the frontend
can render how the story unfolded. Entries come from the CHAPTER_RESOLVED
events written in the same transaction as each resolution, so they always
match what was actually rewarded.
"""
from typing import Any, Dict, List

from core.store import GameStore

CHAPTER_RESOLVED = "CHAPTER_RESOLVED"


def get_chapter_history(store: GameStore, room) -> List[Dict[str, Any]]:
    """
    Return an ordered list of resolved chapters (order 1..N) with
    their A/B counts, the winning side and who was rewarded.

    Chapters that are still open have no resolution event and are skipped.
    """
    titles = {chapter.id: chapter.title for chapter in store.list_chapters(room.id)}

    history: List[Dict[str, Any]] = []
    for event in store.list_events(room.id, CHAPTER_RESOLVED):
        data = event.data or {}
        history.append({
            "chapter_id": data["chapter_id"],
            "order": data["order"],
            "title": titles.get(data["chapter_id"], ""),
            "count_a": data["count_a"],
            "count_b": data["count_b"],
            "majority": data["majority"],
            "rewarded_user_ids": data.get("rewarded_user_ids", []),
        })

    return sorted(history, key=lambda entry: entry["order"])
