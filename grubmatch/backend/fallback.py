"""Built-in candidate deck used when no upstream provider can answer."""

from __future__ import annotations

from .schemas import Preferences, Restaurant

_UNSPLASH = "https://images.unsplash.com/{photo}?w=800&h=600&fit=crop"

FALLBACK_RESTAURANTS: list[Restaurant] = [
    Restaurant(
        id="r1",
        name="Bella Italia",
        cuisine="Italian",
        price_range="$$",
        rating=4.5,
        review_count=324,
        image_url=_UNSPLASH.format(photo="photo-1414235077428-338989a2e8c0"),
        address="123 Main St",
        distance=0.8,
        dietary_options=["vegetarian"],
        description="Homemade pasta, wood-fired pizza and a long wine list in a cozy room.",
        transactions=["delivery", "pickup"],
        highlights=["Date Night", "Italian Cuisine"],
    ),
    Restaurant(
        id="r2",
        name="Tokyo Garden",
        cuisine="Japanese",
        price_range="$$$",
        rating=4.7,
        review_count=512,
        image_url=_UNSPLASH.format(photo="photo-1579871494447-9811cf80d66c"),
        address="456 Oak Ave",
        distance=1.2,
        dietary_options=["gluten-free", "pescatarian"],
        description="Premium sushi and traditional Japanese dishes.",
        transactions=["delivery", "pickup"],
        highlights=["Date Night", "Japanese Cuisine"],
    ),
    Restaurant(
        id="r3",
        name="El Mariachi",
        cuisine="Mexican",
        price_range="$",
        rating=4.3,
        review_count=287,
        image_url=_UNSPLASH.format(photo="photo-1565299585323-38d6b0865b47"),
        address="789 Elm St",
        distance=0.5,
        dietary_options=["vegetarian", "vegan"],
        description="Street tacos, fresh guacamole and margaritas.",
        transactions=["delivery", "pickup"],
        highlights=["Casual Eats", "Mexican Cuisine"],
    ),
    Restaurant(
        id="r4",
        name="The Grill House",
        cuisine="Steakhouse",
        price_range="$$$$",
        rating=4.8,
        review_count=456,
        image_url=_UNSPLASH.format(photo="photo-1544025162-d76694265947"),
        address="321 Pine Rd",
        distance=2.1,
        description="Aged prime cuts, classic sides and a deep wine cellar.",
        transactions=["pickup"],
        highlights=["Date Night", "Highly Rated"],
    ),
    Restaurant(
        id="r5",
        name="Spice Route",
        cuisine="Indian",
        price_range="$$",
        rating=4.4,
        review_count=198,
        image_url=_UNSPLASH.format(photo="photo-1585937421612-70a008356fbe"),
        address="555 Spice Ln",
        distance=1.5,
        dietary_options=["vegetarian", "vegan", "gluten-free"],
        description="Aromatic curries, fresh naan and regional specialties.",
        transactions=["delivery", "pickup"],
        highlights=["Indian Cuisine", "Casual Eats"],
    ),
    Restaurant(
        id="r6",
        name="Golden Dragon",
        cuisine="Chinese",
        price_range="$$",
        rating=4.2,
        review_count=345,
        image_url=_UNSPLASH.format(photo="photo-1563245372-f21724e3856d"),
        address="888 Dragon Way",
        distance=0.9,
        dietary_options=["vegetarian"],
        description="Cantonese and Szechuan dishes, dim sum and hand-pulled noodles.",
        transactions=["delivery", "pickup"],
        highlights=["Chinese Cuisine", "Casual Eats"],
    ),
    Restaurant(
        id="r7",
        name="Mediterranean Breeze",
        cuisine="Mediterranean",
        price_range="$$",
        rating=4.6,
        review_count=267,
        image_url=_UNSPLASH.format(photo="photo-1544124065-6e44b000ca18"),
        address="222 Olive St",
        distance=1.8,
        dietary_options=["vegetarian", "gluten-free"],
        description="Grilled meats, falafel, hummus and bright salads.",
        transactions=["delivery", "pickup"],
        highlights=["Mediterranean Cuisine", "Brunch Spot"],
    ),
    Restaurant(
        id="r8",
        name="Bangkok Street",
        cuisine="Thai",
        price_range="$",
        rating=4.4,
        review_count=178,
        image_url=_UNSPLASH.format(photo="photo-1559314809-0d155014e29e"),
        address="444 Thai Ave",
        distance=1.1,
        dietary_options=["vegetarian", "vegan"],
        description="Thai street food: pad thai, green curry and iced tea.",
        transactions=["delivery", "pickup"],
        highlights=["Thai Cuisine", "Casual Eats"],
    ),
    Restaurant(
        id="r9",
        name="Seoul Kitchen",
        cuisine="Korean",
        price_range="$$",
        rating=4.5,
        review_count=234,
        image_url=_UNSPLASH.format(photo="photo-1498654896293-37aacf113fd9"),
        address="777 Seoul Blvd",
        distance=2.3,
        dietary_options=["gluten-free"],
        description="Table-side Korean BBQ with banchan.",
        transactions=["pickup"],
        highlights=["Korean Cuisine", "Date Night"],
    ),
    Restaurant(
        id="r10",
        name="Burger Barn",
        cuisine="Burger",
        price_range="$",
        rating=4.3,
        review_count=567,
        image_url=_UNSPLASH.format(photo="photo-1568901346375-23c9450c58cd"),
        address="111 Burger Ln",
        distance=0.4,
        dietary_options=["vegetarian"],
        description="Local beef burgers, hand-cut fries and milkshakes.",
        transactions=["delivery", "pickup"],
        highlights=["Casual Eats", "Quick Bites"],
    ),
    Restaurant(
        id="r11",
        name="Pizzeria Napoli",
        cuisine="Pizza",
        price_range="$$",
        rating=4.6,
        review_count=423,
        image_url=_UNSPLASH.format(photo="photo-1574071318508-1cdbab80d002"),
        address="333 Pizza Way",
        distance=0.7,
        dietary_options=["vegetarian"],
        description="Neapolitan pizza from a wood-fired oven.",
        transactions=["delivery", "pickup"],
        highlights=["Italian Cuisine", "Casual Eats"],
    ),
    Restaurant(
        id="r12",
        name="Ocean Catch",
        cuisine="Seafood",
        price_range="$$$",
        rating=4.7,
        review_count=289,
        image_url=_UNSPLASH.format(photo="photo-1559339352-11d035aa65de"),
        address="999 Harbor Dr",
        distance=3.2,
        dietary_options=["gluten-free", "pescatarian"],
        description="Catch of the day, raw bar and lobster rolls on the waterfront.",
        transactions=["pickup"],
        highlights=["Seafood", "Date Night", "Highly Rated"],
    ),
]


def filter_fallback(preferences: Preferences, restaurants: list[Restaurant] | None = None) -> list[Restaurant]:
    """Apply price, cuisine and radius preferences; never return an empty deck."""
    deck = list(restaurants if restaurants is not None else FALLBACK_RESTAURANTS)
    filtered = deck
    if preferences.price_range:
        filtered = [r for r in filtered if r.price_range in preferences.price_range]
    if preferences.cuisine_types:
        filtered = [r for r in filtered if r.cuisine in preferences.cuisine_types]
    filtered = [r for r in filtered if r.distance <= preferences.radius]
    return filtered or deck
