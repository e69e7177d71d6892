"""Known statement spellings for common UK payees.

Keys are matched against the bill's provider or name, values against the
transaction's description and merchant.
"""

PROVIDER_ALIASES: dict[str, tuple[str, ...]] = {
    "netflix": ("netflix", "nflx"),
    "spotify": ("spotify",),
    "amazon prime": ("amazon", "prime video", "amzn", "amazon prime"),
    "disney plus": ("disney", "disney plus", "disneyplus"),
    "apple": ("apple com", "apple music", "icloud"),
    "virgin media": ("virgin", "vm", "virgin media"),
    "british gas": ("british gas", "bg", "centrica"),
    "thames water": ("thames", "thames water"),
    "council tax": ("council", "local authority", "district council", "borough council"),
    "sky": ("sky uk", "sky digital", "sky com"),
    "bt": ("bt group", "british telecom", "bt com"),
    "ee": ("ee limited", "everything everywhere", "ee co uk"),
    "vodafone": ("vodafone", "voda"),
    "o2": ("o2", "telefonica"),
    "three": ("three", "three co uk", "hutchison"),
    "now tv": ("now tv", "nowtv"),
    "youtube": ("youtube", "google youtube"),
    "audible": ("audible",),
    "gym": ("puregym", "the gym", "gym group", "virgin active", "nuffield"),
    "insurance": ("aviva", "direct line", "admiral", "axa", "more than"),
}
