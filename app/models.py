"""Pydantic models describing MAL payloads and derived analytics."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

AnimeStatus = Literal["watching", "completed", "on_hold", "dropped", "plan_to_watch"]
SeasonName = Literal["winter", "spring", "summer", "fall"]

ANIME_STATUSES: tuple[str, ...] = (
    "watching",
    "completed",
    "on_hold",
    "dropped",
    "plan_to_watch",
)
SEASON_ORDER: tuple[str, ...] = ("winter", "spring", "summer", "fall")


class Credentials(BaseModel):
    """Snapshot of the account credentials held by the credential store."""

    client_id: str = ""
    access_token: str = ""
    refresh_token: str = ""
    token_expiry: float = 0.0
    username: str = ""
    user_id: str = ""


class Studio(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""


class Genre(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""


class StartSeason(BaseModel):
    model_config = ConfigDict(frozen=True)

    year: int
    season: SeasonName


class RelatedAnime(BaseModel):
    """An outgoing "related anime" edge as reported by MAL."""

    model_config = ConfigDict(frozen=True)

    target_id: int
    title: str = ""
    relation_type: str = ""
    relation_type_formatted: str = ""

    @property
    def label(self) -> str:
        return self.relation_type_formatted or self.relation_type

    @classmethod
    def from_mal(cls, payload: dict[str, Any]) -> "RelatedAnime | None":
        node = payload.get("node")
        if not isinstance(node, dict) or not isinstance(node.get("id"), int):
            return None
        return cls(
            target_id=node["id"],
            title=str(node.get("title") or ""),
            relation_type=str(payload.get("relation_type") or ""),
            relation_type_formatted=str(payload.get("relation_type_formatted") or ""),
        )


class AnimeListEntry(BaseModel):
    """Immutable snapshot of one row of the user's anime list."""

    model_config = ConfigDict(frozen=True)

    id: int
    title: str
    image: str = ""
    status: AnimeStatus
    score: int = Field(default=0, ge=0, le=10)
    episodes_watched: int = 0
    total_episodes: int = 0
    url: str = ""
    updated_at: str | None = None

    studios: tuple[Studio, ...] = ()
    start_season: StartSeason | None = None
    related_anime: tuple[RelatedAnime, ...] = ()
    genres: tuple[Genre, ...] = ()
    community_mean_score: float | None = None

    @classmethod
    def from_mal_item(cls, item: dict[str, Any]) -> "AnimeListEntry":
        """Build an entry from one ``data[]`` element of the list endpoint."""

        node = item.get("node") or {}
        list_status = item.get("list_status") or {}
        picture = node.get("main_picture") or {}
        season = node.get("start_season")
        related = [
            RelatedAnime.from_mal(rel)
            for rel in node.get("related_anime") or []
            if isinstance(rel, dict)
        ]
        return cls(
            id=node["id"],
            title=str(node.get("title") or ""),
            image=str(picture.get("large") or picture.get("medium") or ""),
            status=list_status.get("status") or "plan_to_watch",
            score=int(list_status.get("score") or 0),
            episodes_watched=int(list_status.get("num_episodes_watched") or 0),
            total_episodes=int(node.get("num_episodes") or 0),
            url=f"https://myanimelist.net/anime/{node['id']}",
            updated_at=list_status.get("updated_at"),
            studios=tuple(
                Studio.model_validate(studio)
                for studio in node.get("studios") or []
                if isinstance(studio, dict)
            ),
            start_season=(
                StartSeason.model_validate(season) if isinstance(season, dict) else None
            ),
            related_anime=tuple(rel for rel in related if rel is not None),
            genres=tuple(
                Genre.model_validate(genre)
                for genre in node.get("genres") or []
                if isinstance(genre, dict)
            ),
            community_mean_score=node.get("mean"),
        )


class UserStats(BaseModel):
    username: str
    total_anime: int = 0
    total_episodes: int = 0
    days_watched: float = 0
    mean_score: float = 0
    watching: int = 0
    completed: int = 0
    on_hold: int = 0
    dropped: int = 0
    plan_to_watch: int = 0

    @classmethod
    def from_mal(cls, data: dict[str, Any], *, fallback_username: str) -> "UserStats":
        stats = data.get("anime_statistics") or {}
        return cls(
            username=str(data.get("name") or fallback_username or "Unknown"),
            total_anime=stats.get("num_items") or 0,
            total_episodes=stats.get("num_episodes") or 0,
            days_watched=stats.get("num_days") or 0,
            mean_score=stats.get("mean_score") or 0,
            watching=stats.get("num_items_watching") or 0,
            completed=stats.get("num_items_completed") or 0,
            on_hold=stats.get("num_items_on_hold") or 0,
            dropped=stats.get("num_items_dropped") or 0,
            plan_to_watch=stats.get("num_items_plan_to_watch") or 0,
        )


class ScoreBucket(BaseModel):
    score: int
    count: int


class EntrySummary(BaseModel):
    """Compact entry reference embedded in analytics rows."""

    id: int
    title: str
    image: str = ""
    score: int = 0
    status: AnimeStatus
    episodes_watched: int = 0
    total_episodes: int = 0

    @classmethod
    def from_entry(cls, entry: AnimeListEntry) -> "EntrySummary":
        return cls(
            id=entry.id,
            title=entry.title,
            image=entry.image,
            score=entry.score,
            status=entry.status,
            episodes_watched=entry.episodes_watched,
            total_episodes=entry.total_episodes,
        )


class StudioAffinity(BaseModel):
    studio_id: int
    name: str
    anime_count: int
    total_scored_count: int
    average_score: float
    anime: list[EntrySummary] = Field(default_factory=list)


class GenreScore(BaseModel):
    """How the user rates a genre compared with the community."""

    genre_id: int
    name: str
    average_score: float
    count: int
    community_average: float = 0.0
    diff: float = 0.0


class StudioCompletion(BaseModel):
    studio_id: int
    name: str
    total_anime: int
    completed: int
    watching: int
    dropped: int
    completion_rate: int
    anime: list[EntrySummary] = Field(default_factory=list)


class SeasonalStats(BaseModel):
    year: int
    season: SeasonName
    label: str
    total: int
    completed: int
    completion_rate: int
    average_score: float
    anime: list[EntrySummary] = Field(default_factory=list)


class SeasonSummary(BaseModel):
    """Cross-year aggregate for one season name."""

    season: SeasonName
    total: int
    completed: int
    scored: int
    completion_rate: int
    average_score: float


class SeasonBreakdown(BaseModel):
    seasons: list[SeasonalStats] = Field(default_factory=list)
    by_season: list[SeasonSummary] = Field(default_factory=list)
    favorite_season: SeasonName | None = None


class FranchiseRelation(BaseModel):
    target_id: int
    type: str


class FranchiseNode(BaseModel):
    id: int
    title: str
    image: str = ""
    status: AnimeStatus
    score: int = 0
    relations: list[FranchiseRelation] = Field(default_factory=list)


class FranchiseCluster(BaseModel):
    title: str
    size: int
    member_ids: list[int]
    members: list[FranchiseNode] = Field(default_factory=list)
    completed: int = 0
    average_score: float = 0.0


class RecommendationCandidate(BaseModel):
    id: int
    title: str
    image: str = ""
    community_mean_score: float = 0.0
    genres: list[Genre] = Field(default_factory=list)
    compatibility: int = Field(ge=0, le=100)
    reasons: list[str] = Field(default_factory=list)
    reason: str = ""


class StatsOverview(BaseModel):
    total_entries: int
    score_distribution: list[ScoreBucket]
    studio_affinity: list[StudioAffinity]
    studio_completion: list[StudioCompletion]
    genre_scores: list[GenreScore] = Field(default_factory=list)
    seasons: SeasonBreakdown
    franchises: list[FranchiseCluster]
    recommendations: list[RecommendationCandidate]
