"""Statistics and recommendations derived from the synchronized anime list."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Sequence

from ..config import Settings
from ..models import (
    SEASON_ORDER,
    AnimeListEntry,
    EntrySummary,
    FranchiseCluster,
    FranchiseNode,
    FranchiseRelation,
    GenreScore,
    RecommendationCandidate,
    ScoreBucket,
    SeasonBreakdown,
    SeasonalStats,
    SeasonSummary,
    StatsOverview,
    StudioAffinity,
    StudioCompletion,
)
from ..utils import round_half_up
from .sync import AnimeListSynchronizer

logger = logging.getLogger(__name__)

SEASON_LABELS = {
    "winter": "Winter",
    "spring": "Spring",
    "summer": "Summer",
    "fall": "Fall",
}


@dataclass(frozen=True, slots=True)
class RecommendationWeights:
    """Tunable constants of the compatibility model.

    Studios weigh more than genres on the assumption that a studio's track
    record predicts enjoyment better than genre alone. None of these values
    have been validated against real outcomes.
    """

    genre_weight: float = 15.0
    studio_weight: float = 20.0
    community_bonus: float = 10.0
    community_threshold: float = 8.0
    cutoff: float = 30.0
    min_score: int = 7
    min_count: int = 2
    limit: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecommendationWeights":
        return cls(
            genre_weight=settings.recommendation_genre_weight,
            studio_weight=settings.recommendation_studio_weight,
            community_bonus=settings.recommendation_community_bonus,
            community_threshold=settings.recommendation_community_threshold,
            cutoff=settings.recommendation_cutoff,
            min_score=settings.recommendation_min_score,
            min_count=settings.recommendation_min_count,
            limit=settings.recommendation_limit,
        )


def _average(values: Sequence[int]) -> float:
    if not values:
        return 0.0
    return round_half_up(sum(values) / len(values), 2)


def _percent(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return int(round_half_up(part / whole * 100))


def _by_score(entries: Iterable[AnimeListEntry]) -> list[EntrySummary]:
    return sorted(
        (EntrySummary.from_entry(entry) for entry in entries),
        key=lambda summary: summary.score,
        reverse=True,
    )


def score_distribution(entries: Iterable[AnimeListEntry]) -> list[ScoreBucket]:
    """Histogram of scores 1-10; unscored entries are left out."""

    counts = {score: 0 for score in range(1, 11)}
    for entry in entries:
        if 1 <= entry.score <= 10:
            counts[entry.score] += 1
    return [ScoreBucket(score=score, count=count) for score, count in counts.items()]


def studio_affinity(
    entries: Iterable[AnimeListEntry], *, min_scored: int = 2
) -> list[StudioAffinity]:
    """Average the user's scores per studio.

    An entry counts toward every studio it lists. Studios with fewer than
    ``min_scored`` scored entries are not reported.
    """

    names: dict[int, str] = {}
    members: dict[int, list[AnimeListEntry]] = defaultdict(list)
    for entry in entries:
        for studio in entry.studios:
            names.setdefault(studio.id, studio.name)
            members[studio.id].append(entry)

    results: list[StudioAffinity] = []
    for studio_id, studio_entries in members.items():
        scores = [entry.score for entry in studio_entries if entry.score > 0]
        if len(scores) < min_scored:
            continue
        results.append(
            StudioAffinity(
                studio_id=studio_id,
                name=names[studio_id],
                anime_count=len(studio_entries),
                total_scored_count=len(scores),
                average_score=_average(scores),
                anime=_by_score(studio_entries),
            )
        )
    results.sort(key=lambda row: (-row.average_score, -row.anime_count))
    return results


def studio_completion(
    entries: Iterable[AnimeListEntry], *, min_total: int = 3
) -> list[StudioCompletion]:
    names: dict[int, str] = {}
    members: dict[int, list[AnimeListEntry]] = defaultdict(list)
    for entry in entries:
        for studio in entry.studios:
            names.setdefault(studio.id, studio.name)
            members[studio.id].append(entry)

    results = []
    for studio_id, studio_entries in members.items():
        if len(studio_entries) < min_total:
            continue
        completed = sum(1 for entry in studio_entries if entry.status == "completed")
        results.append(
            StudioCompletion(
                studio_id=studio_id,
                name=names[studio_id],
                total_anime=len(studio_entries),
                completed=completed,
                watching=sum(1 for e in studio_entries if e.status == "watching"),
                dropped=sum(1 for e in studio_entries if e.status == "dropped"),
                completion_rate=_percent(completed, len(studio_entries)),
                anime=[EntrySummary.from_entry(entry) for entry in studio_entries],
            )
        )
    results.sort(key=lambda row: (-row.completion_rate, -row.total_anime))
    return results


def genre_breakdown(
    entries: Iterable[AnimeListEntry], *, min_count: int = 3
) -> list[GenreScore]:
    """Average score per genre over scored entries, next to the community mean.

    ``diff`` is the user's average minus the community average of the same
    entries, or 0 when none of them carry a community score.
    """

    names: dict[int, str] = {}
    scores: dict[int, list[int]] = defaultdict(list)
    community: dict[int, list[float]] = defaultdict(list)
    for entry in entries:
        if entry.score <= 0:
            continue
        for genre in entry.genres:
            names.setdefault(genre.id, genre.name)
            scores[genre.id].append(entry.score)
            if entry.community_mean_score:
                community[genre.id].append(entry.community_mean_score)

    results: list[GenreScore] = []
    for genre_id, genre_scores in scores.items():
        if len(genre_scores) < min_count:
            continue
        average = sum(genre_scores) / len(genre_scores)
        means = community.get(genre_id) or []
        community_average = sum(means) / len(means) if means else 0.0
        results.append(
            GenreScore(
                genre_id=genre_id,
                name=names[genre_id],
                average_score=round_half_up(average, 2),
                count=len(genre_scores),
                community_average=round_half_up(community_average, 2),
                diff=round_half_up(average - community_average, 2) if means else 0.0,
            )
        )
    results.sort(key=lambda row: row.average_score, reverse=True)
    return results


def seasonal_breakdown(entries: Iterable[AnimeListEntry]) -> SeasonBreakdown:
    """Group entries by airing season, per year and across years."""

    per_year: dict[tuple[int, str], list[AnimeListEntry]] = defaultdict(list)
    per_season: dict[str, list[AnimeListEntry]] = defaultdict(list)
    for entry in entries:
        if entry.start_season is None:
            continue
        season = entry.start_season
        per_year[(season.year, season.season)].append(entry)
        per_season[season.season].append(entry)

    seasons: list[SeasonalStats] = []
    for (year, season), season_entries in per_year.items():
        completed = sum(1 for entry in season_entries if entry.status == "completed")
        seasons.append(
            SeasonalStats(
                year=year,
                season=season,
                label=f"{SEASON_LABELS[season]} {year}",
                total=len(season_entries),
                completed=completed,
                completion_rate=_percent(completed, len(season_entries)),
                average_score=_average([e.score for e in season_entries if e.score > 0]),
                anime=_by_score(season_entries),
            )
        )
    seasons.sort(key=lambda row: (row.year, SEASON_ORDER.index(row.season)), reverse=True)

    by_season: list[SeasonSummary] = []
    for season in SEASON_ORDER:
        season_entries = per_season.get(season)
        if not season_entries:
            continue
        completed = sum(1 for entry in season_entries if entry.status == "completed")
        scores = [entry.score for entry in season_entries if entry.score > 0]
        by_season.append(
            SeasonSummary(
                season=season,
                total=len(season_entries),
                completed=completed,
                scored=len(scores),
                completion_rate=_percent(completed, len(season_entries)),
                average_score=_average(scores),
            )
        )

    favorite = None
    if by_season:
        favorite = max(by_season, key=lambda s: (s.total, s.average_score)).season
    return SeasonBreakdown(seasons=seasons, by_season=by_season, favorite_season=favorite)


def _franchise_node(entry: AnimeListEntry, own_ids: set[int]) -> FranchiseNode:
    return FranchiseNode(
        id=entry.id,
        title=entry.title,
        image=entry.image,
        status=entry.status,
        score=entry.score,
        relations=[
            FranchiseRelation(target_id=rel.target_id, type=rel.label)
            for rel in entry.related_anime
            if rel.target_id in own_ids and rel.target_id != entry.id
        ],
    )


def franchise_nodes(entries: Sequence[AnimeListEntry]) -> list[FranchiseNode]:
    """Entries with at least one relation to another entry of the same list.

    Relations pointing at titles outside the list are dropped.
    """

    own_ids = {entry.id for entry in entries}
    nodes = (_franchise_node(entry, own_ids) for entry in entries)
    return [node for node in nodes if node.relations]


def _adjacency(entries: Sequence[AnimeListEntry]) -> dict[int, set[int]]:
    own_ids = {entry.id for entry in entries}
    graph: dict[int, set[int]] = {entry.id: set() for entry in entries}
    for entry in entries:
        for rel in entry.related_anime:
            target = rel.target_id
            if target not in own_ids or target == entry.id:
                continue
            graph[entry.id].add(target)
            graph[target].add(entry.id)
    return graph


def franchise_clusters(entries: Sequence[AnimeListEntry]) -> list[FranchiseCluster]:
    """Connected components (size >= 2) of the in-list relation graph.

    The display title is the shortest member title, ties broken
    alphabetically. That is a presentation heuristic, not a claim about
    which entry is the franchise's main work.
    """

    graph = _adjacency(entries)
    by_id = {entry.id: entry for entry in entries}
    own_ids = set(by_id)
    visited: set[int] = set()
    clusters: list[FranchiseCluster] = []

    for entry in entries:
        if entry.id in visited:
            continue
        component: list[int] = []
        stack = [entry.id]
        visited.add(entry.id)
        while stack:
            current = stack.pop()
            component.append(current)
            for neighbour in graph[current]:
                if neighbour not in visited:
                    visited.add(neighbour)
                    stack.append(neighbour)
        if len(component) < 2:
            continue

        component.sort()
        members = [by_id[anime_id] for anime_id in component]
        clusters.append(
            FranchiseCluster(
                title=min((m.title for m in members), key=lambda t: (len(t), t)),
                size=len(members),
                member_ids=component,
                members=[_franchise_node(m, own_ids) for m in members],
                completed=sum(1 for m in members if m.status == "completed"),
                average_score=_average([m.score for m in members if m.score > 0]),
            )
        )

    clusters.sort(key=lambda cluster: (-cluster.size, cluster.title))
    return clusters


@dataclass(slots=True)
class PreferenceProfile:
    """Per-id ``(name, score_sum, count)`` built from well-rated entries."""

    genres: dict[int, tuple[str, int, int]]
    studios: dict[int, tuple[str, int, int]]

    @classmethod
    def build(
        cls, entries: Iterable[AnimeListEntry], *, min_score: int
    ) -> "PreferenceProfile":
        genres: dict[int, tuple[str, int, int]] = {}
        studios: dict[int, tuple[str, int, int]] = {}
        for entry in entries:
            if entry.score < min_score:
                continue
            for genre in entry.genres:
                name, total, count = genres.get(genre.id, (genre.name, 0, 0))
                genres[genre.id] = (name, total + entry.score, count + 1)
            for studio in entry.studios:
                name, total, count = studios.get(studio.id, (studio.name, 0, 0))
                studios[studio.id] = (name, total + entry.score, count + 1)
        return cls(genres=genres, studios=studios)


def compatibility_score(
    entry: AnimeListEntry,
    profile: PreferenceProfile,
    weights: RecommendationWeights | None = None,
) -> tuple[int, list[str]]:
    """Return the clamped 0-100 compatibility of ``entry`` and its reasons."""

    weights = weights or RecommendationWeights()
    score = 0.0
    reasons: list[str] = []
    for genre in entry.genres:
        pref = profile.genres.get(genre.id)
        if pref is None or pref[2] < weights.min_count:
            continue
        average = pref[1] / pref[2]
        score += (average / 10) * weights.genre_weight
        if average >= 8:
            reasons.append(f"You love {genre.name}")
    for studio in entry.studios:
        pref = profile.studios.get(studio.id)
        if pref is None or pref[2] < weights.min_count:
            continue
        average = pref[1] / pref[2]
        score += (average / 10) * weights.studio_weight
        if average >= 8:
            reasons.append(f"{studio.name} ({pref[2]} watched)")
    mean = entry.community_mean_score
    if mean is not None and mean >= weights.community_threshold:
        score += weights.community_bonus
    return int(max(0.0, min(100.0, round_half_up(score)))), reasons


def recommendations(
    entries: Sequence[AnimeListEntry],
    weights: RecommendationWeights | None = None,
) -> list[RecommendationCandidate]:
    """Rank plan-to-watch entries against the user's genre and studio taste."""

    weights = weights or RecommendationWeights()
    profile = PreferenceProfile.build(entries, min_score=weights.min_score)

    candidates: list[RecommendationCandidate] = []
    for entry in entries:
        if entry.status != "plan_to_watch":
            continue
        compatibility, reasons = compatibility_score(entry, profile, weights)
        if compatibility <= weights.cutoff:
            continue
        candidates.append(
            RecommendationCandidate(
                id=entry.id,
                title=entry.title,
                image=entry.image,
                community_mean_score=entry.community_mean_score or 0.0,
                genres=list(entry.genres),
                compatibility=compatibility,
                reasons=reasons,
                reason=" • ".join(reasons[:2]) or "In your plan to watch",
            )
        )

    candidates.sort(key=lambda candidate: candidate.compatibility, reverse=True)
    return candidates[: weights.limit]


class AnalyticsService:
    """Fetch the list on demand and derive every dashboard view from it."""

    def __init__(self, settings: Settings, synchronizer: AnimeListSynchronizer):
        self._settings = settings
        self._synchronizer = synchronizer
        self._weights = RecommendationWeights.from_settings(settings)

    @property
    def weights(self) -> RecommendationWeights:
        return self._weights

    async def load_entries(
        self,
        *,
        extended: bool = True,
        cancel_event: asyncio.Event | None = None,
    ) -> list[AnimeListEntry]:
        batch = await self._synchronizer.fetch_anime_list(
            extended=extended, cancel_event=cancel_event
        )
        return batch.entries

    async def score_distribution(self) -> list[ScoreBucket]:
        return score_distribution(await self.load_entries(extended=False))

    async def studio_affinity(self) -> list[StudioAffinity]:
        return studio_affinity(
            await self.load_entries(), min_scored=self._settings.studio_min_scored
        )

    async def studio_completion(self) -> list[StudioCompletion]:
        return studio_completion(await self.load_entries())

    async def genre_breakdown(self) -> list[GenreScore]:
        return genre_breakdown(await self.load_entries())

    async def seasonal_breakdown(self) -> SeasonBreakdown:
        return seasonal_breakdown(await self.load_entries())

    async def franchise_nodes(self) -> list[FranchiseNode]:
        return franchise_nodes(await self.load_entries())

    async def franchise_clusters(self) -> list[FranchiseCluster]:
        return franchise_clusters(await self.load_entries())

    async def recommendations(self) -> list[RecommendationCandidate]:
        return recommendations(await self.load_entries(), self._weights)

    async def overview(self, *, cancel_event: asyncio.Event | None = None) -> StatsOverview:
        """Compute every view from a single extended synchronization."""

        entries = await self.load_entries(cancel_event=cancel_event)
        logger.info("Computing MAL analytics for %s entries", len(entries))
        return StatsOverview(
            total_entries=len(entries),
            score_distribution=score_distribution(entries),
            studio_affinity=studio_affinity(
                entries, min_scored=self._settings.studio_min_scored
            ),
            studio_completion=studio_completion(entries),
            genre_scores=genre_breakdown(entries),
            seasons=seasonal_breakdown(entries),
            franchises=franchise_clusters(entries),
            recommendations=recommendations(entries, self._weights),
        )
