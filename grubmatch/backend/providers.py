"""Upstream candidate providers (Yelp search, Google Places ratings)."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from .errors import UpstreamUnavailableError
from .fallback import FALLBACK_RESTAURANTS
from .schemas import Cuisine, Preferences, PriceRange, Restaurant

logger = logging.getLogger(__name__)

YELP_SEARCH_URL = "https://api.yelp.com/v3/businesses/search"
GOOGLE_PLACES_URL = "https://places.googleapis.com/v1/places:searchText"
METERS_PER_MILE = 1609.34
MAX_RADIUS_METERS = 40000
PAGE_SIZE = 50
MAX_RESULTS = 20
ENRICH_BATCH_SIZE = 5
DEFAULT_IMAGE = "https://images.unsplash.com/photo-1517248135467-4c7edcad34c4?w=800&h=600&fit=crop"

CUISINE_CATEGORIES: dict[str, str] = {
    "Italian": "italian",
    "Mexican": "mexican",
    "Chinese": "chinese",
    "Japanese": "japanese",
    "Indian": "indpak",
    "Thai": "thai",
    "American": "tradamerican,newamerican",
    "Mediterranean": "mediterranean",
    "French": "french",
    "Korean": "korean",
    "Vietnamese": "vietnamese",
    "Greek": "greek",
    "Middle Eastern": "mideastern",
    "Spanish": "spanish",
    "Seafood": "seafood",
    "Steakhouse": "steak",
    "Pizza": "pizza",
    "Burger": "burgers",
    "Sushi": "sushi",
    "BBQ": "bbq",
}

# Checked in order; the first alias/title fragment that matches decides.
CUISINE_KEYWORDS: list[tuple[tuple[str, ...], Cuisine]] = [
    (("italian",), "Italian"),
    (("mexican",), "Mexican"),
    (("chinese",), "Chinese"),
    (("japanese", "sushi"), "Japanese"),
    (("indpak", "indian"), "Indian"),
    (("thai",), "Thai"),
    (("korean",), "Korean"),
    (("vietnamese",), "Vietnamese"),
    (("greek",), "Greek"),
    (("mediterranean",), "Mediterranean"),
    (("french",), "French"),
    (("spanish",), "Spanish"),
    (("seafood",), "Seafood"),
    (("steak",), "Steakhouse"),
    (("pizza",), "Pizza"),
    (("burger",), "Burger"),
    (("bbq", "barbecue"), "BBQ"),
    (("mideastern", "middle eastern"), "Middle Eastern"),
]

EXCLUDED_CATEGORIES = frozenset(
    {
        "coffee", "coffeeshops", "cafes", "bakeries", "desserts", "icecream",
        "donuts", "juicebars", "bubbletea", "acaibowls", "cakeshop", "cupcakes",
        "cookies", "candy", "chocolatiers", "gelato", "froyo", "waffles",
        "creperies", "pretzels", "popcorn", "shavedice", "tea", "breweries",
        "winebars", "cocktailbars", "divebars", "sportsbars", "pubs", "lounges",
        "hookah", "karaoke", "danceclubs", "jazzandblues", "musicvenues",
        "foodtrucks", "foodstands", "hotdog", "catering", "personalchefs",
    }
)

RESTAURANT_CATEGORIES = (
    "restaurants", "italian", "mexican", "chinese", "japanese", "indian",
    "thai", "american", "mediterranean", "french", "korean", "vietnamese",
    "greek", "mideastern", "spanish", "seafood", "steak", "pizza", "burgers",
    "sushi", "bbq", "asianfusion", "latin", "caribbean", "southern", "soulfood",
    "cajun", "brazilian", "peruvian", "turkish", "lebanese", "ethiopian",
    "african", "german", "british", "irish", "polish", "russian", "hawaiian",
    "filipino", "malaysian", "indonesian", "singaporean", "taiwanese", "dimsum",
    "ramen", "poke", "tacos", "burritos", "sandwiches", "delis", "diners",
    "breakfast_brunch", "brunch", "gastropubs", "bistros", "brasseries",
)

PRICE_LEVELS: dict[str, str] = {"$": "1", "$$": "2", "$$$": "3", "$$$$": "4"}
SORT_OPTIONS = ("rating", "review_count", "distance")


class CandidateProvider(Protocol):
    async def fetch(self, preferences: Preferences, offset: int = 0) -> list[Restaurant]:
        """Return one page of candidates; raise UpstreamUnavailableError on failure."""


@dataclass
class StaticCandidateProvider:
    restaurants: list[Restaurant] = field(default_factory=lambda: list(FALLBACK_RESTAURANTS))

    async def fetch(self, preferences: Preferences, offset: int = 0) -> list[Restaurant]:
        return list(self.restaurants[offset:])


def detect_cuisine(categories: list[dict[str, str]]) -> Cuisine:
    for category in categories:
        alias = category.get("alias", "").lower()
        title = category.get("title", "").lower()
        for keywords, cuisine in CUISINE_KEYWORDS:
            if any(keyword in alias or keyword in title for keyword in keywords):
                return cuisine
    return "American"


def is_actual_restaurant(categories: list[dict[str, str]]) -> bool:
    aliases = [category.get("alias", "").lower() for category in categories]
    if any(alias in EXCLUDED_CATEGORIES for alias in aliases):
        return False
    if any(valid in alias for alias in aliases for valid in RESTAURANT_CATEGORIES):
        return True
    return any(
        "restaurant" in category.get("alias", "").lower() or "restaurant" in category.get("title", "").lower()
        for category in categories
    )


def meters_to_miles(meters: float) -> float:
    return round(meters / METERS_PER_MILE, 1)


def _price_range(price: str | None) -> PriceRange:
    if price in PRICE_LEVELS:
        return price  # type: ignore[return-value]
    return "$$"


def _highlights(business: dict[str, Any], price_range: str) -> list[str]:
    rating = float(business.get("rating") or 0)
    review_count = int(business.get("review_count") or 0)
    categories = business.get("categories") or []
    aliases = [category.get("alias", "").lower() for category in categories]
    titles = " ".join(category.get("title", "").lower() for category in categories)
    transactions = business.get("transactions") or []

    highlights: list[str] = []
    if rating >= 4.5:
        highlights.append("Highly Rated")
    if review_count > 500:
        highlights.append("Popular Spot")
    if price_range in ("$$$", "$$$$") and rating >= 4.0:
        highlights.append("Date Night")
    if "brunch" in titles or "breakfast" in titles:
        highlights.append("Brunch Spot")
    if any("burger" in alias or "pizza" in alias or "wings" in alias for alias in aliases):
        highlights.append("Casual Eats")
    if any("sushi" in alias or "ramen" in alias for alias in aliases):
        highlights.append("Japanese Cuisine")
    for transaction, label in (("reservation", "Reservations"), ("delivery", "Delivery"), ("pickup", "Pickup")):
        if transaction in transactions:
            highlights.append(label)
    return highlights


def business_to_restaurant(business: dict[str, Any]) -> Restaurant:
    categories = business.get("categories") or []
    price_range = _price_range(business.get("price"))
    location = business.get("location") or {}
    coordinates = business.get("coordinates") or {}
    rating = float(business.get("rating") or 0)
    review_count = int(business.get("review_count") or 0)
    titles = ", ".join(category.get("title", "") for category in categories)
    return Restaurant(
        id=business["id"],
        name=business["name"],
        cuisine=detect_cuisine(categories),
        price_range=price_range,
        rating=rating,
        review_count=review_count,
        image_url=business.get("image_url") or DEFAULT_IMAGE,
        address=f"{location.get('address1') or ''}, {location.get('city') or ''}".strip(", "),
        distance=meters_to_miles(business["distance"]) if business.get("distance") else 0,
        description=f"{rating} star rated with {review_count} reviews. {titles}.",
        url=business.get("url"),
        latitude=coordinates.get("latitude"),
        longitude=coordinates.get("longitude"),
        phone=business.get("display_phone"),
        transactions=list(business.get("transactions") or []),
        highlights=_highlights(business, price_range),
    )


def build_search_params(preferences: Preferences, offset: int, rng: random.Random) -> dict[str, str]:
    categories = ",".join(CUISINE_CATEGORIES[cuisine] for cuisine in preferences.cuisine_types) or "restaurants"
    radius_meters = min(round(preferences.radius * METERS_PER_MILE), MAX_RADIUS_METERS)
    params = {
        "categories": categories,
        "radius": str(radius_meters),
        "limit": str(PAGE_SIZE),
        "sort_by": rng.choice(SORT_OPTIONS),
        # First page starts at a random offset so repeated sessions see different decks.
        "offset": str(offset if offset > 0 else rng.randrange(30)),
    }
    if preferences.has_coordinates:
        params["latitude"] = str(preferences.latitude)
        params["longitude"] = str(preferences.longitude)
    else:
        params["location"] = preferences.location
    if preferences.price_range:
        params["price"] = ",".join(PRICE_LEVELS[price] for price in preferences.price_range)
    return params


def apply_preference_filters(preferences: Preferences, restaurants: list[Restaurant]) -> list[Restaurant]:
    filtered = [r for r in restaurants if r.distance == 0 or r.distance <= preferences.radius]
    if preferences.min_rating:
        filtered = [r for r in filtered if r.rating >= preferences.min_rating]
    if preferences.exclude_cuisines:
        filtered = [r for r in filtered if r.cuisine not in preferences.exclude_cuisines]
    if not filtered:
        logger.info("Preference filters removed every upstream result; keeping unfiltered results")
        filtered = list(restaurants)
    filtered.sort(key=lambda r: r.distance)
    return filtered[:MAX_RESULTS]


@dataclass
class GooglePlacesEnricher:
    """Adds Google rating fields to candidates; failures yield no enrichment."""

    api_key: str | None
    timeout: float = 8.0
    transport: httpx.AsyncBaseTransport | None = None

    def __post_init__(self) -> None:
        self._cache: dict[str, dict[str, Any]] = {}

    async def enrich(self, restaurants: list[Restaurant]) -> list[Restaurant]:
        if not self.api_key or not restaurants:
            return restaurants
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            enriched: list[Restaurant] = []
            for start in range(0, len(restaurants), ENRICH_BATCH_SIZE):
                batch = restaurants[start : start + ENRICH_BATCH_SIZE]
                lookups = await asyncio.gather(*(self._lookup(client, restaurant) for restaurant in batch))
                enriched.extend(
                    restaurant.model_copy(update=data) if data else restaurant
                    for restaurant, data in zip(batch, lookups)
                )
        return enriched

    async def _lookup(self, client: httpx.AsyncClient, restaurant: Restaurant) -> dict[str, Any]:
        cache_key = f"{restaurant.name}|{restaurant.address}"
        if cache_key in self._cache:
            return self._cache[cache_key]

        body: dict[str, Any] = {
            "textQuery": f"{restaurant.name} {restaurant.address}".strip(),
            "includedType": "restaurant",
            "pageSize": 1,
        }
        if restaurant.latitude is not None and restaurant.longitude is not None:
            body["locationBias"] = {
                "circle": {
                    "center": {"latitude": restaurant.latitude, "longitude": restaurant.longitude},
                    "radius": 1000.0,
                }
            }
        headers = {
            "X-Goog-Api-Key": self.api_key or "",
            "X-Goog-FieldMask": "places.rating,places.userRatingCount,places.displayName,places.googleMapsUri",
        }
        try:
            response = await client.post(GOOGLE_PLACES_URL, json=body, headers=headers)
            response.raise_for_status()
            places = response.json().get("places") or []
        except (httpx.HTTPError, ValueError):
            logger.warning("Google Places lookup failed for %r", restaurant.name, exc_info=True)
            return {}

        data: dict[str, Any] = {}
        if places:
            place = places[0]
            data = {
                "google_rating": place.get("rating"),
                "google_review_count": place.get("userRatingCount"),
                "google_maps_url": place.get("googleMapsUri"),
            }
        self._cache[cache_key] = data
        return data


@dataclass
class YelpCandidateProvider:
    api_key: str | None
    timeout: float = 8.0
    enricher: GooglePlacesEnricher | None = None
    transport: httpx.AsyncBaseTransport | None = None
    rng: random.Random = field(default_factory=random.Random)

    async def fetch(self, preferences: Preferences, offset: int = 0) -> list[Restaurant]:
        if not self.api_key:
            logger.info("No Yelp API key configured; skipping upstream search")
            return []

        params = build_search_params(preferences, offset, self.rng)
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(YELP_SEARCH_URL, params=params, headers=headers)
                response.raise_for_status()
                businesses = response.json().get("businesses") or []
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailableError("Yelp search timed out") from exc
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            raise UpstreamUnavailableError(f"Yelp search failed: {exc.__class__.__name__}") from exc

        restaurants: list[Restaurant] = []
        seen: set[str] = set()
        for business in businesses:
            try:
                business_id = business.get("id")
                if not business_id or business_id in seen:
                    continue
                if not is_actual_restaurant(business.get("categories") or []):
                    continue
                restaurant = business_to_restaurant(business)
            except (KeyError, TypeError, AttributeError, ValueError):
                logger.warning("Skipping malformed Yelp business record", exc_info=True)
                continue
            seen.add(business_id)
            restaurants.append(restaurant)

        logger.info(
            "Yelp returned %d restaurants for %r (radius %smi)",
            len(restaurants),
            preferences.location,
            preferences.radius,
        )
        if not restaurants:
            return []

        filtered = apply_preference_filters(preferences, restaurants)
        if self.enricher is not None:
            filtered = await self.enricher.enrich(filtered)
        return filtered
