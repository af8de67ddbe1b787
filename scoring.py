# scoring.py
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from config import Config
from exceptions import InvalidParameterError
from custom_logging import logger
from models import ScoreResult
from spatial import nearest_distance

ProgressCallback = Optional[Callable[[float], None]]

CATEGORIES = ("environmental", "infrastructure", "economic", "social")

# Fields commonly filtered on; any other numeric site property works too
FILTERABLE_FIELDS = (
    "area",
    "road_distance",
    "grid_distance",
    "gas_distance",
    "slope",
    "soil_quality",
    "flood_risk",
    "water_availability",
    "elevation",
)

# Values used when a site does not report an attribute
DEFAULTS = {
    "soil_quality": 5,
    "water_availability": 5,
    "biodiversity": 5,
    "flood_risk": 5,
    "road_distance": 2000,
    "grid_distance": 10000,
    "gas_distance": 5000,
    "land_cost": 20000,
    "development_cost": 100000,
    "area": 10,
}


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _bracket(value: float, brackets: Sequence[Tuple[float, float]], otherwise: float) -> float:
    """Score of the first bracket whose upper bound holds value"""
    for upper, score in brackets:
        if value <= upper:
            return score
    return otherwise


def _site_properties(site: Mapping[str, Any]) -> Mapping[str, Any]:
    return site.get("properties") or {}


@dataclass(frozen=True)
class ScoringCriteria:
    environmental: float = 0.35
    infrastructure: float = 0.25
    economic: float = 0.25
    social: float = 0.15

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ScoringCriteria":
        """Accept {'environmental': {'weight': 0.35}, ...} or {'environmental': 0.35, ...}"""
        if isinstance(data, ScoringCriteria):
            return data
        if not data:
            return cls()
        weights = {}
        for category in CATEGORIES:
            if category not in data:
                continue
            entry = data[category]
            weight = entry.get("weight") if isinstance(entry, Mapping) else entry
            weights[category] = float(weight)
        return cls(**weights)


@dataclass(frozen=True)
class RangeFilter:
    field: str
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    exclusive: bool = False

    def matches(self, properties: Mapping[str, Any]) -> bool:
        value = properties.get(self.field)
        if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if self.minimum is not None:
            if value < self.minimum or (self.exclusive and value == self.minimum):
                return False
        if self.maximum is not None:
            if value > self.maximum or (self.exclusive and value == self.maximum):
                return False
        return True


def parse_filters(filters: Any) -> List[RangeFilter]:
    """Build range filters from {'area': {'min': 5, 'max': 50, 'exclusive': False}, ...}"""
    if not filters:
        return []
    if isinstance(filters, Sequence) and all(isinstance(f, RangeFilter) for f in filters):
        return list(filters)
    parsed = []
    for field_name, bounds in filters.items():
        if not isinstance(bounds, Mapping):
            raise InvalidParameterError(f"Filter for {field_name} must be a mapping of bounds")
        minimum = bounds.get("min")
        maximum = bounds.get("max")
        if minimum is None and maximum is None:
            continue
        parsed.append(RangeFilter(
            field=field_name,
            minimum=None if minimum is None else float(minimum),
            maximum=None if maximum is None else float(maximum),
            exclusive=bool(bounds.get("exclusive", False)),
        ))
    return parsed


class SiteScorer:
    """Weighted four-factor evaluation of candidate sites.

    Every subscore is an average of bracketed or linear contributions, with
    1-10 scale attributes clamped to their scale, so each lands in [0, 1].
    """

    @staticmethod
    def _value(props: Mapping[str, Any], name: str) -> float:
        value = props.get(name)
        if value is None:
            return float(DEFAULTS[name])
        return float(value)

    @staticmethod
    def _present(props: Mapping[str, Any], name: str) -> Optional[float]:
        value = props.get(name)
        return None if value is None else float(value)

    def environmental_score(self, props: Mapping[str, Any]) -> float:
        def scale(name: str) -> float:
            return _clamp(self._value(props, name) / 10)

        score = (
            scale("soil_quality") * 0.4
            + scale("water_availability") * 0.3
            + scale("biodiversity") * 0.2
            + (1 - scale("flood_risk")) * 0.1
        )
        return _clamp(score)

    def infrastructure_score(self, props: Mapping[str, Any]) -> float:
        road = _bracket(self._value(props, "road_distance"),
                        [(500, 1.0), (1000, 0.9), (2000, 0.7), (3000, 0.5)], 0.3)
        grid = _bracket(self._value(props, "grid_distance"),
                        [(5000, 1.0), (10000, 0.8), (15000, 0.6)], 0.4)
        gas = _bracket(self._value(props, "gas_distance"),
                       [(2000, 1.0), (5000, 0.8), (10000, 0.6)], 0.4)
        water = _clamp(self._value(props, "water_availability") / 10)
        return _clamp((road + grid + gas + water) / 4)

    def economic_score(self, props: Mapping[str, Any]) -> float:
        land = _bracket(self._value(props, "land_cost"),
                        [(10000, 1.0), (20000, 0.8), (30000, 0.6), (40000, 0.4)], 0.2)
        development = _bracket(self._value(props, "development_cost"),
                               [(50000, 1.0), (100000, 0.8), (150000, 0.6), (200000, 0.4)], 0.2)

        operational = 0.7
        if (self._present(props, "grid_distance") or 0) > 10000:
            operational -= 0.2
        if (self._present(props, "gas_distance") or 0) > 5000:
            operational -= 0.1
        if (self._present(props, "road_distance") or 0) > 2000:
            operational -= 0.1
        operational = max(0.1, operational)

        revenue = 0.6
        if (self._present(props, "area") or 0) > 20:
            revenue += 0.2
        if (self._present(props, "water_availability") or 0) > 7:
            revenue += 0.1
        if (self._present(props, "biodiversity") or 0) > 7:
            revenue += 0.1
        revenue = min(1.0, revenue)

        return _clamp((land + development + operational + revenue) / 4)

    def social_score(self, props: Mapping[str, Any]) -> float:
        community = 0.6
        if (self._present(props, "residential_distance") or 0) > 2000:
            community += 0.2
        if (self._present(props, "protected_area_distance") or 0) > 3000:
            community += 0.1
        if (self._present(props, "conservation_area_distance") or 0) > 4000:
            community += 0.1
        community = min(1.0, community)

        area = self._value(props, "area")
        # job creation grows with site area
        jobs = 1.0 if area > 30 else 0.8 if area > 20 else 0.6 if area > 10 else 0.4 if area > 5 else 0.2

        benefits = 0.6
        if area > 15:
            benefits += 0.2
        if (self._present(props, "water_availability") or 0) > 6:
            benefits += 0.1
        if (self._present(props, "biodiversity") or 0) > 6:
            benefits += 0.1
        benefits = min(1.0, benefits)

        return _clamp((community + jobs + benefits) / 3)

    def score(self, site: Mapping[str, Any], criteria: Any = None) -> ScoreResult:
        """Score one site; a pure function of (site, criteria)"""
        weights = ScoringCriteria.from_dict(criteria)
        props = _site_properties(site)
        environmental = self.environmental_score(props)
        infrastructure = self.infrastructure_score(props)
        economic = self.economic_score(props)
        social = self.social_score(props)
        total = (
            environmental * weights.environmental
            + infrastructure * weights.infrastructure
            + economic * weights.economic
            + social * weights.social
        )
        return ScoreResult(
            site_id=site.get("id"),
            environmental=environmental,
            infrastructure=infrastructure,
            economic=economic,
            social=social,
            total=total,
        )

    def rank_sites(
        self,
        sites: Sequence[Mapping[str, Any]],
        criteria: Any = None,
        on_progress: ProgressCallback = None,
    ) -> List[Dict[str, Any]]:
        """Score every site, sort by total descending (stable) and number the ranks from 1"""
        weights = ScoringCriteria.from_dict(criteria)
        scored = []
        for i, site in enumerate(sites):
            result = self.score(site, weights)
            scored.append((site, result))
            if on_progress and i % Config.PROGRESS_INTERVAL == 0:
                on_progress(i / len(sites) * 100)

        scored.sort(key=lambda pair: pair[1].total, reverse=True)
        ranked = []
        for position, (site, result) in enumerate(scored, start=1):
            result.rank = position
            ranked.append({**site, "scores": result.to_dict(), "score": result.total, "rank": position})

        logger.info("Sites ranked", num_sites=len(ranked))
        return ranked

    def filter_sites(
        self,
        sites: Sequence[Mapping[str, Any]],
        filters: Any,
        on_progress: ProgressCallback = None,
    ) -> List[Mapping[str, Any]]:
        """Keep the sites that satisfy every supplied bound"""
        predicates = parse_filters(filters)
        kept = []
        for i, site in enumerate(sites):
            props = _site_properties(site)
            if all(p.matches(props) for p in predicates):
                kept.append(site)
            if on_progress and i % Config.PROGRESS_INTERVAL == 0:
                on_progress(i / len(sites) * 100)
        logger.info("Sites filtered", num_sites=len(sites), num_kept=len(kept))
        return kept

    def analyze_sites(
        self,
        sites: Sequence[Mapping[str, Any]],
        criteria: Any = None,
        constraints: Any = None,
        on_progress: ProgressCallback = None,
    ) -> List[Dict[str, Any]]:
        """Attach subscores, total and (when constraints are given) a constraint verdict to each site"""
        weights = ScoringCriteria.from_dict(criteria)
        predicates = parse_filters(constraints)
        results = []
        for i, site in enumerate(sites):
            analysis = self.score(site, weights).to_dict()
            if predicates:
                props = _site_properties(site)
                analysis["meets_constraints"] = all(p.matches(props) for p in predicates)
            results.append({**site, "analysis": analysis})
            if on_progress and i % Config.PROGRESS_INTERVAL == 0:
                on_progress(i / len(sites) * 100)
        return results

    def calculate_distances(
        self,
        sites: Sequence[Mapping[str, Any]],
        infrastructure: Mapping[str, Sequence[Any]],
        on_progress: ProgressCallback = None,
    ) -> List[Dict[str, Any]]:
        """Nearest haversine distance (m) from each site to each infrastructure layer"""
        layers = {
            "road_distance": infrastructure.get("roads"),
            "grid_distance": infrastructure.get("grid"),
            "gas_distance": infrastructure.get("gas"),
        }
        targets = {
            name: [item["coordinates"] if isinstance(item, Mapping) else item for item in items]
            for name, items in layers.items()
            if items
        }
        results = []
        for i, site in enumerate(sites):
            distances = {name: nearest_distance(site["coordinates"], coords) for name, coords in targets.items()}
            results.append({"site_id": site.get("id"), "distances": distances})
            if on_progress and i % Config.DISTANCE_PROGRESS_INTERVAL == 0:
                on_progress(i / len(sites) * 100)
        return results
