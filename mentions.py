"""
@mention detection and inbox notifications.

Matching is a plain substring scan for ``@Full Name`` or ``@FirstName``; it
does not tokenise. When one member's first name is shared with or is a prefix
of another's, every such member matches.
"""
import logging
from typing import Iterable, List, Optional

from database import SERVER_TIMESTAMP, DocumentStore
from schemas import INBOX, Identity, Member, Project, Task

logger = logging.getLogger(__name__)


def find_mentioned_members(text: str, members: Iterable[Member], author_uid: Optional[str]) -> List[Member]:
    found: List[Member] = []
    seen = set()
    for m in members:
        if m.uid == author_uid or m.uid in seen or not m.name:
            continue
        if f"@{m.name}" in text or (m.first_name and f"@{m.first_name}" in text):
            found.append(m)
            seen.add(m.uid)
    return found


async def dispatch_mentions(
    backend: DocumentStore,
    text: str,
    task: Task,
    project: Optional[Project],
    author: Identity,
) -> List[str]:
    """Create one inbox record per mentioned member; returns the recipients' uids."""
    if project is None or not text:
        return []
    recipients = find_mentioned_members(text, project.members, author.uid)
    for member in recipients:
        await backend.create(INBOX, {
            "to_uid": member.uid,
            "from_uid": author.uid,
            "from_name": author.display_name,
            "task_id": task.id,
            "task_title": task.title,
            "project_id": project.id,
            "project_name": project.name,
            "comment_text": text,
            "read": False,
            "created_at": SERVER_TIMESTAMP,
        })
    if recipients:
        logger.info("Mention notifications sent", extra={"task_id": task.id, "recipients": len(recipients)})
    return [m.uid for m in recipients]
