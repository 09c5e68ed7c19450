"""Backend package for GrubMatch group sessions."""

from .config import BackendSettings, load_settings
from .engine import MatchRule, find_matches, find_matches_with_super_like_boost, find_unanimous_matches
from .security import MemberBindings, generate_token, tokens_match
from .state import build_initial_group, generate_join_code
from .store import GroupStore, InMemoryGroupStore, PostgresGroupStore, create_store

__all__ = [
    "BackendSettings",
    "build_initial_group",
    "create_store",
    "find_matches",
    "find_matches_with_super_like_boost",
    "find_unanimous_matches",
    "generate_join_code",
    "generate_token",
    "GroupStore",
    "InMemoryGroupStore",
    "load_settings",
    "MatchRule",
    "MemberBindings",
    "PostgresGroupStore",
    "tokens_match",
]
