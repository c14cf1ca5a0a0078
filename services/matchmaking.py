import random
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from backend import KVStore
from constants import IDENTITY_TTL_SECONDS, MATCH_ATTEMPTS, MAX_INTERESTS
from errors import ValidationError
from logging_config import get_logger
from redis_keys import IDENTITY_KEY, WAITING_KEY, WAITING_PREFIX, key_part
from services.connections import ConnectionManager

logger = get_logger(__name__)


def generate_username() -> str:
    return f"Stranger_{random.randint(0, 9999)}"


def normalize_interests(interests: Optional[Iterable[str]]) -> List[str]:
    """Strip tags, drop blanks and case-insensitive duplicates, keep the caller's order."""
    cleaned = []
    seen = set()
    for tag in interests or []:
        if not isinstance(tag, str):
            raise ValidationError("interests must be strings")
        tag = tag.strip()
        if not tag or tag.lower() in seen:
            continue
        seen.add(tag.lower())
        cleaned.append(tag)
    if len(cleaned) > MAX_INTERESTS:
        raise ValidationError(f"At most {MAX_INTERESTS} interests are allowed")
    return cleaned


def interest_score(mine: Iterable[str], theirs: Iterable[str]) -> int:
    return len({t.lower() for t in mine} & {t.lower() for t in theirs})


@dataclass
class MatchResult:
    matched: bool
    username: Optional[str] = None
    partner_id: Optional[str] = None
    partner_username: Optional[str] = None

    @property
    def partner(self) -> Optional[dict]:
        if not self.matched:
            return None
        return {"userId": self.partner_id, "username": self.partner_username}


class MatchmakingQueue:
    """Waiting set plus interest-based pairing.

    The waiting set is a set of ``waiting:{userId}`` records in the store.
    A pairing is committed with one ``replace_if_present`` call that removes
    both waiting records and writes the connection and its two pointers, so
    two joins racing for the same candidate cannot both win.
    """

    def __init__(self, store: KVStore, connections: Optional[ConnectionManager] = None):
        self.store = store
        self.connections = connections or ConnectionManager(store)

    def join(self, user_id: str, interests: Optional[Iterable[str]] = None) -> MatchResult:
        if not user_id or not str(user_id).strip():
            raise ValidationError("userId is required")
        interests = normalize_interests(interests)

        # a user is never waiting and paired at once
        if self.connections.partner_of(user_id):
            logger.info(f"User {user_id} rejoined while paired, dropping old pairing")
            self.connections.disconnect(user_id)

        username = generate_username()
        waiting_user = {
            "userId": user_id,
            "username": username,
            "interests": interests,
            "enqueuedAt": datetime.now().isoformat(),
        }
        self.store.set(WAITING_KEY.format(user_id=key_part(user_id)), waiting_user)
        self.store.set(
            IDENTITY_KEY.format(user_id=key_part(user_id)),
            {"userId": user_id, "username": username},
            ttl=IDENTITY_TTL_SECONDS,
        )
        logger.info(f"User {user_id} joined queue as {username} with interests {interests}")

        for attempt in range(1, MATCH_ATTEMPTS + 1):
            candidate = self.find_best_match(waiting_user)
            if candidate is None:
                break

            records = self.connections.build_records(user_id, candidate["userId"])
            committed = self.store.replace_if_present(
                [
                    WAITING_KEY.format(user_id=key_part(user_id)),
                    WAITING_KEY.format(user_id=key_part(candidate["userId"])),
                ],
                records,
            )
            if committed:
                logger.info(f"Matched {user_id} with {candidate['userId']} on attempt {attempt}")
                return MatchResult(True, username, candidate["userId"], candidate["username"])

            # either someone paired us already or the candidate was taken
            existing = self.check(user_id)
            if existing.matched:
                existing.username = username
                return existing
            if self.store.get(WAITING_KEY.format(user_id=key_part(user_id))) is None:
                # removed by a concurrent leave/disconnect
                break
            logger.debug(f"Candidate {candidate['userId']} was taken, retrying match for {user_id}")

        logger.debug(f"No partner available for {user_id}, waiting")
        return MatchResult(False, username)

    def find_best_match(self, current: dict) -> Optional[dict]:
        """Highest interest overlap wins; ties go to the earliest enqueued candidate."""
        best, best_score = None, -1
        for candidate in self.waiting_users():
            if candidate.get("userId") == current["userId"]:
                continue
            score = interest_score(current["interests"], candidate.get("interests") or [])
            if score > best_score:
                best, best_score = candidate, score
        if best is not None:
            logger.debug(f"Best match for {current['userId']} is {best['userId']} (score {best_score})")
        return best

    def check(self, user_id: str) -> MatchResult:
        if not user_id or not str(user_id).strip():
            raise ValidationError("userId is required")
        pointer = self.connections.partner_of(user_id)
        if not pointer:
            return MatchResult(False)
        partner_id = pointer["partnerId"]
        return MatchResult(True, partner_id=partner_id, partner_username=self.display_name(partner_id))

    def display_name(self, user_id: str) -> str:
        record = self.store.get(WAITING_KEY.format(user_id=key_part(user_id))) or self.store.get(
            IDENTITY_KEY.format(user_id=key_part(user_id))
        )
        if record and record.get("username"):
            return record["username"]
        logger.warning(f"No identity record for {user_id}, generating a display name")
        return generate_username()

    def leave(self, user_id: str) -> bool:
        removed = self.store.delete(WAITING_KEY.format(user_id=key_part(user_id)))
        if removed:
            logger.info(f"User {user_id} left the queue")
        return removed

    def waiting_users(self) -> List[dict]:
        users = [value for _, value in self.store.scan_prefix(WAITING_PREFIX)]
        # sort is stable, so equal timestamps keep scan order
        return sorted(users, key=lambda u: u.get("enqueuedAt", ""))
