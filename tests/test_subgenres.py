from cinerank.subgenres import (
    detect_subgenres, detect_niches, subgenre_label, prefixes_for_genre,
    NICHE_ANIME, NICHE_FOOD_DOC, NICHE_STAND_UP,
)


def test_subgenres_only_match_within_parent_genre():
    keywords = ["space", "spaceship", "superhero"]

    assert "ACTION_SUPERHERO" in detect_subgenres("Action", "", keywords)
    assert all(key.startswith("SCIFI") for key in detect_subgenres("Science Fiction", "", keywords))
    assert detect_subgenres("Drama", "", ["superhero"]) == set()
    assert detect_subgenres("Western", "", keywords) == set()


def test_phrase_matching_respects_word_boundaries():
    # "marvel" must not match "marvelous"
    assert detect_subgenres("Action", "", ["marvelous journey"]) == set()
    assert "ACTION_SUPERHERO" in detect_subgenres("Action", "", ["based on comic book"])


def test_title_counts_toward_detection():
    assert "HORROR_ZOMBIE" in detect_subgenres("Horror", "Zombie Night", [])


def test_subgenre_label_and_prefixes():
    assert subgenre_label("ACTION_SUPERHERO") == "superhero"
    assert subgenre_label("HORROR_FOUND_FOOTAGE") == "found footage"
    assert prefixes_for_genre(" Science Fiction ") == ("SCIFI",)


def test_detect_niches():
    assert detect_niches("Jiro Dreams of Sushi", ["Documentary"], ["chef", "restaurant"]) == {NICHE_FOOD_DOC}
    # Food keywords outside documentaries are not a niche
    assert detect_niches("Ratatouille", ["Animation"], ["chef"]) == set()
    assert NICHE_ANIME in detect_niches("Akira", ["Animation"], ["anime"])
    assert NICHE_STAND_UP in detect_niches("Live", ["Comedy"], ["stand-up"])
