"""
Subgenre taxonomy and niche detection.

Subgenres are keyword-matched within their parent genre: a film's keywords
(and title) are only checked against subgenres whose prefix belongs to one of
the film's genres, so "space" under Drama never counts as SCIFI_SPACE.
"""
import re
from functools import lru_cache

SUBGENRE_KEYWORDS: dict[str, list[str]] = {
    # Horror
    'HORROR_SUPERNATURAL': ['supernatural', 'ghost', 'demon', 'possession', 'haunted', 'paranormal', 'spirit', 'poltergeist', 'séance', 'ouija', 'exorcism'],
    'HORROR_PSYCHOLOGICAL': ['psychological horror', 'mind games', 'mental breakdown', 'madness', 'insanity', 'unreliable narrator', 'hallucination', 'paranoia'],
    'HORROR_SLASHER': ['slasher', 'serial killer', 'masked killer', 'massacre', 'stalker', 'final girl', 'body count'],
    'HORROR_ZOMBIE': ['zombie', 'undead', 'living dead', 'walking dead', 'outbreak', 'infection', 'reanimated'],
    'HORROR_BODY': ['body horror', 'body transformation', 'mutation', 'grotesque', 'flesh', 'cronenberg', 'metamorphosis', 'deformity', 'parasite'],
    'HORROR_FOLK': ['folk horror', 'pagan', 'ritual', 'cult', 'rural horror', 'isolated community', 'wicker man', 'midsommar', 'ancient ritual'],
    'HORROR_WITCH': ['witch', 'witchcraft', 'coven', 'black magic', 'salem', 'witches', 'sorceress', 'dark magic', 'curse'],
    'HORROR_COSMIC': ['cosmic horror', 'lovecraft', 'lovecraftian', 'eldritch', 'cthulhu', 'existential horror', 'cosmic dread', 'elder gods'],
    'HORROR_OCCULT': ['occult', 'satanic', 'devil', 'demonic ritual', 'black mass', 'satanism', 'antichrist', 'lucifer'],
    'HORROR_GOTHIC': ['gothic horror', 'gothic', 'dark castle', 'victorian horror', 'castle', 'manor'],
    'HORROR_FOUND_FOOTAGE': ['found footage', 'mockumentary horror', 'handheld', 'pov horror'],
    'HORROR_GIALLO': ['giallo', 'italian horror', 'argento', 'bava'],
    'HORROR_MONSTER': ['monster', 'creature', 'beast', 'monster movie', 'creature feature'],
    'HORROR_VAMPIRE': ['vampire', 'nosferatu', 'bloodsucker', 'dracula', 'vampiric'],
    'HORROR_WEREWOLF': ['werewolf', 'lycanthrope', 'full moon', 'lycanthropy'],
    'HORROR_COMEDY': ['horror comedy', 'comedy horror', 'campy', 'splatter comedy', 'zom-com'],
    'HORROR_ELEVATED': ['elevated horror', 'arthouse horror', 'slow burn horror', 'art horror'],
    'HORROR_SCIFI': ['sci-fi horror', 'space horror', 'alien horror', 'science fiction horror'],

    # Thriller
    'THRILLER_PSYCHOLOGICAL': ['psychological thriller', 'mind games', 'unreliable narrator', 'twist ending', 'manipulation'],
    'THRILLER_CONSPIRACY': ['conspiracy', 'cover-up', 'paranoid thriller', 'secret organization', 'government conspiracy'],
    'THRILLER_CRIME': ['crime thriller', 'detective', 'investigation', 'murder mystery', 'whodunit', 'police thriller'],
    'THRILLER_NEO_NOIR': ['neo-noir', 'noir', 'femme fatale', 'hard-boiled', 'neo noir'],
    'THRILLER_LEGAL': ['legal thriller', 'courtroom thriller', 'lawyer', 'trial'],
    'THRILLER_POLITICAL': ['political thriller', 'assassination', 'political intrigue'],
    'THRILLER_EROTIC': ['erotic thriller', 'seduction', 'dangerous attraction'],
    'THRILLER_SPY': ['spy thriller', 'espionage thriller', 'cia', 'mi6', 'cold war thriller'],
    'THRILLER_TECH': ['techno thriller', 'hacker', 'cyber thriller', 'surveillance'],
    'THRILLER_REVENGE': ['revenge thriller', 'vigilante', 'payback', 'retribution'],

    # Drama
    'DRAMA_PSYCHOLOGICAL': ['psychological drama', 'character study', 'internal conflict', 'mental health'],
    'DRAMA_SURREAL': ['surreal', 'surrealism', 'dreamlike', 'lynchian', 'avant-garde', 'experimental'],
    'DRAMA_ARTHOUSE': ['arthouse', 'art house', 'art film', 'auteur', 'festival film'],
    'DRAMA_SLOW_BURN': ['slow burn', 'atmospheric', 'meditative', 'contemplative'],
    'DRAMA_HISTORICAL': ['historical', 'period piece', 'historical drama'],
    'DRAMA_FAMILY': ['family drama', 'dysfunctional family', 'family conflict', 'siblings'],
    'DRAMA_COMING_OF_AGE': ['coming of age', 'adolescence', 'growing up', 'teen drama'],
    'DRAMA_ROMANTIC': ['romantic drama', 'love story', 'heartbreak', 'tragic love'],
    'DRAMA_SOCIAL': ['social drama', 'social commentary', 'inequality', 'class struggle', 'poverty'],
    'DRAMA_SPORTS': ['sports drama', 'underdog', 'championship', 'athlete', 'coach'],
    'DRAMA_WAR': ['war drama', 'anti-war', 'soldier', 'battlefield', 'veteran', 'ptsd'],
    'DRAMA_BIOGRAPHICAL': ['biography', 'biopic', 'true story', 'based on true story', 'life story'],
    'DRAMA_PRISON': ['prison drama', 'incarceration', 'penitentiary', 'death row'],

    # Science fiction
    'SCIFI_SPACE': ['space', 'spaceship', 'outer space', 'galaxy', 'astronaut', 'space station', 'interstellar'],
    'SCIFI_CYBERPUNK': ['cyberpunk', 'corporate dystopia', 'high tech low life'],
    'SCIFI_TIME_TRAVEL': ['time travel', 'time loop', 'time machine', 'alternate timeline', 'paradox'],
    'SCIFI_ALIEN': ['alien', 'extraterrestrial', 'ufo', 'alien invasion', 'first contact'],
    'SCIFI_POST_APOCALYPTIC': ['post-apocalyptic', 'apocalypse', 'end of the world', 'wasteland', 'nuclear'],
    'SCIFI_DYSTOPIA': ['dystopia', 'dystopian', 'totalitarian', 'orwellian', 'surveillance state'],
    'SCIFI_SPACE_OPERA': ['space opera', 'galactic', 'empire', 'rebellion'],
    'SCIFI_BIOPUNK': ['biopunk', 'genetic engineering', 'biotechnology', 'cloning'],
    'SCIFI_ROBOT': ['robot', 'android', 'artificial intelligence', 'sentient machine', 'cyborg'],
    'SCIFI_VIRTUAL_REALITY': ['virtual reality', 'simulation', 'metaverse', 'simulated reality'],
    'SCIFI_KAIJU': ['kaiju', 'giant monster', 'godzilla'],

    # Comedy
    'COMEDY_ROMANTIC': ['romantic comedy', 'rom-com', 'dating', 'meet cute'],
    'COMEDY_DARK': ['dark comedy', 'black comedy', 'gallows humor', 'macabre'],
    'COMEDY_SATIRE': ['satire', 'political satire', 'social satire', 'satirical'],
    'COMEDY_PARODY': ['parody', 'spoof', 'mockumentary', 'send-up'],
    'COMEDY_SLAPSTICK': ['slapstick', 'physical comedy', 'farce'],
    'COMEDY_BUDDY': ['buddy comedy', 'buddy cop', 'odd couple'],
    'COMEDY_STONER': ['stoner comedy', 'marijuana', 'weed'],
    'COMEDY_ABSURD': ['absurd', 'surreal comedy', 'absurdist'],
    'COMEDY_TEEN': ['teen comedy', 'high school comedy'],
    'COMEDY_RAUNCHY': ['raunchy', 'sex comedy', 'gross-out'],

    # Action
    'ACTION_SUPERHERO': ['superhero', 'super hero', 'marvel', 'dc comics', 'comic book', 'batman', 'superman', 'spider-man', 'avengers', 'x-men', 'justice league', 'mcu', 'dceu'],
    'ACTION_SPY': ['spy', 'espionage', 'secret agent', 'james bond', '007', 'undercover'],
    'ACTION_MILITARY': ['military', 'navy seal', 'special forces', 'combat', 'army'],
    'ACTION_MARTIAL_ARTS': ['martial arts', 'kung fu', 'karate', 'taekwondo', 'mma', 'wuxia'],
    'ACTION_HEIST': ['heist', 'robbery', 'bank robbery', 'con artist', 'caper'],
    'ACTION_CAR_CHASE': ['car chase', 'street racing', 'racing'],
    'ACTION_DISASTER': ['disaster', 'earthquake', 'tsunami', 'volcano', 'natural disaster'],
    'ACTION_REVENGE': ['revenge', 'vengeance', 'vigilante', 'retribution'],
    'ACTION_MERCENARY': ['mercenary', 'soldier of fortune', 'guns for hire'],
    'ACTION_SWASHBUCKLER': ['swashbuckler', 'pirate', 'sword fighting', 'musketeer', 'pirates'],
    'ACTION_WESTERN': ['western', 'cowboy', 'wild west', 'gunslinger', 'outlaw'],
    'ACTION_GUNPLAY': ['gunplay', 'shootout', 'gun fu', 'heroic bloodshed'],

    # Animation
    'ANIME_SCIFI': ['anime', 'japanese animation'],
    'ANIME_MECHA': ['mecha', 'giant robot', 'gundam'],
    'ANIME_SHONEN': ['shonen', 'battle anime'],
    'ANIME_SLICE_OF_LIFE': ['slice of life', 'iyashikei'],
    'ANIME_ISEKAI': ['isekai', 'transported to another world'],
    'ANIMATION_PIXAR': ['pixar', 'disney animation', 'family animation', 'cg animation'],
    'ANIMATION_STOP_MOTION': ['stop motion', 'claymation', 'puppet animation'],
    'ANIMATION_ADULT': ['adult animation', 'mature animation'],

    # Documentary
    'DOC_TRUE_CRIME': ['true crime', 'crime documentary', 'serial killer'],
    'DOC_NATURE': ['nature documentary', 'wildlife', 'nature'],
    'DOC_MUSIC': ['music documentary', 'concert film', 'musician'],
    'DOC_SPORTS': ['sports documentary', 'athlete'],
    'DOC_POLITICAL': ['political documentary', 'activist'],
    'DOC_FOOD': ['food documentary', 'chef', 'cooking', 'cuisine', 'restaurant'],
    'DOC_TRAVEL': ['travel documentary', 'journey', 'expedition'],
    'DOC_HISTORICAL': ['historical documentary', 'history', 'war documentary'],

    # Romance
    'ROMANCE_PERIOD': ['period romance', 'historical romance', 'regency', 'jane austen'],
    'ROMANCE_TRAGIC': ['tragic romance', 'doomed love', 'star-crossed lovers'],
    'ROMANCE_LGBTQ': ['lgbtq romance', 'gay romance', 'lesbian romance', 'queer love'],
    'ROMANCE_FANTASY': ['fantasy romance', 'supernatural romance', 'paranormal romance'],

    # Fantasy
    'FANTASY_EPIC': ['epic fantasy', 'high fantasy', 'tolkien', 'quest', 'chosen one'],
    'FANTASY_DARK': ['dark fantasy', 'grimdark'],
    'FANTASY_URBAN': ['urban fantasy', 'contemporary fantasy'],
    'FANTASY_FAIRY_TALE': ['fairy tale', 'fairytale', 'once upon a time'],
    'FANTASY_SWORD_SORCERY': ['sword and sorcery', 'barbarian'],
    'FANTASY_MYTHOLOGICAL': ['mythology', 'greek mythology', 'norse mythology', 'gods'],
}

# Parent genre -> taxonomy prefixes
GENRE_PREFIXES: dict[str, tuple[str, ...]] = {
    'action': ('ACTION',),
    'adventure': ('ACTION',),
    'animation': ('ANIME', 'ANIMATION'),
    'comedy': ('COMEDY',),
    'documentary': ('DOC',),
    'drama': ('DRAMA',),
    'fantasy': ('FANTASY',),
    'horror': ('HORROR',),
    'romance': ('ROMANCE',),
    'science fiction': ('SCIFI',),
    'sci-fi': ('SCIFI',),
    'thriller': ('THRILLER',),
}

# Niche categories: a niche candidate is only compatible with users who have
# watched at least one film of that niche.
NICHE_ANIME = 'anime'
NICHE_STAND_UP = 'stand_up'
NICHE_FOOD_DOC = 'food_doc'
NICHE_TRAVEL_DOC = 'travel_doc'

NICHE_LABELS = {
    NICHE_ANIME: 'anime',
    NICHE_STAND_UP: 'stand-up comedy',
    NICHE_FOOD_DOC: 'food documentaries',
    NICHE_TRAVEL_DOC: 'travel documentaries',
}

_NICHE_TERMS = {
    NICHE_ANIME: ['anime', 'japanese animation'],
    NICHE_STAND_UP: ['stand-up', 'stand up comedy', 'comedian'],
    NICHE_FOOD_DOC: ['food', 'cooking', 'chef', 'restaurant'],
    NICHE_TRAVEL_DOC: ['travel', 'journey', 'explorer', 'adventure documentary'],
}


@lru_cache(maxsize=None)
def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(r'(?<!\w)' + re.escape(phrase.lower()) + r'(?!\w)')


def _contains(text: str, phrase: str) -> bool:
    return _phrase_pattern(phrase).search(text) is not None


def _build_text(title: str, keywords: list[str]) -> str:
    return ' | '.join([title.lower(), *(k.lower() for k in keywords)])


def prefixes_for_genre(genre: str) -> tuple[str, ...]:
    return GENRE_PREFIXES.get(genre.strip().lower(), ())


def detect_subgenres(genre: str, title: str, keywords: list[str]) -> set[str]:
    """Return taxonomy keys matched by the film's title/keywords within ``genre``."""
    prefixes = prefixes_for_genre(genre)
    if not prefixes:
        return set()

    text = _build_text(title, keywords)
    detected = set()
    for key, phrases in SUBGENRE_KEYWORDS.items():
        if key.split('_', 1)[0] not in prefixes:
            continue
        if any(_contains(text, phrase) for phrase in phrases):
            detected.add(key)
    return detected


def subgenre_label(key: str) -> str:
    """'ACTION_SUPERHERO' -> 'superhero'."""
    return key.split('_', 1)[1].replace('_', ' ').lower() if '_' in key else key.lower()


def detect_niches(title: str, genres: list[str], keywords: list[str]) -> set[str]:
    text = _build_text(title, keywords)
    genre_set = {g.lower() for g in genres}
    niches = set()

    if any('anime' in g for g in genre_set) or any(_contains(text, t) for t in _NICHE_TERMS[NICHE_ANIME]):
        niches.add(NICHE_ANIME)
    if any(_contains(text, t) for t in _NICHE_TERMS[NICHE_STAND_UP]):
        niches.add(NICHE_STAND_UP)
    if 'documentary' in genre_set:
        if any(_contains(text, t) for t in _NICHE_TERMS[NICHE_FOOD_DOC]):
            niches.add(NICHE_FOOD_DOC)
        if any(_contains(text, t) for t in _NICHE_TERMS[NICHE_TRAVEL_DOC]):
            niches.add(NICHE_TRAVEL_DOC)
    return niches
