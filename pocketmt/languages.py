"""
Supported Languages for the SMALL-100 model family.

The order of FAIRSEQ_LANGUAGE_CODES is significant: position i maps to the
synthetic language token id ``base_vocab_size + i``.
"""

from typing import Dict, List


FAIRSEQ_LANGUAGE_CODES: List[str] = [
    "af", "am", "ar", "ast", "az", "ba", "be", "bg", "bn", "br",
    "bs", "ca", "ceb", "cs", "cy", "da", "de", "el", "en", "es",
    "et", "fa", "ff", "fi", "fr", "fy", "ga", "gd", "gl", "gu",
    "ha", "he", "hi", "hr", "ht", "hu", "hy", "id", "ig", "ilo",
    "is", "it", "ja", "jv", "ka", "kk", "km", "kn", "ko", "lb",
    "lg", "ln", "lo", "lt", "lv", "mg", "mk", "ml", "mn", "mr",
    "ms", "my", "ne", "nl", "no", "ns", "oc", "or", "pa", "pl",
    "ps", "pt", "ro", "ru", "sd", "si", "sk", "sl", "so", "sq",
    "sr", "ss", "su", "sv", "sw", "ta", "th", "tl", "tn", "tr",
    "uk", "ur", "uz", "vi", "wo", "xh", "yi", "yo", "zh", "zu",
]

# ISO 639-2/3 codes accepted from callers, mapped onto the model's codes.
# Codes the model does not cover are still mapped; validation rejects them later.
ISO639_3_TO_FAIRSEQ: Dict[str, str] = {
    "jpn": "ja", "eng": "en", "fra": "fr", "deu": "de", "spa": "es",
    "ita": "it", "por": "pt", "rus": "ru", "kor": "ko", "zho": "zh",
    "ara": "ar", "hin": "hi", "tha": "th", "vie": "vi", "nld": "nl",
    "swe": "sv", "nor": "no", "dan": "da", "fin": "fi", "pol": "pl",
    "ces": "cs", "hun": "hu", "ron": "ro", "bul": "bg", "hrv": "hr",
    "slv": "sl", "slk": "sk", "lit": "lt", "lav": "lv", "est": "et",
    "ell": "el", "tur": "tr", "heb": "he", "fas": "fa", "urd": "ur",
    "ben": "bn", "tam": "ta", "tel": "te", "mar": "mr", "guj": "gu",
    "kan": "kn", "mal": "ml", "pan": "pa", "ori": "or", "asm": "as",
    "nep": "ne", "sin": "si", "mya": "my", "khm": "km", "lao": "lo",
    "kat": "ka", "hye": "hy", "kaz": "kk", "uzb": "uz", "aze": "az",
    "tuk": "tk", "kir": "ky", "tgk": "tg", "mon": "mn", "bod": "bo",
    "msa": "ms", "ind": "id", "tgl": "tl", "ceb": "ceb", "ilo": "ilo",
    "jav": "jv", "sun": "su", "afr": "af", "amh": "am", "hau": "ha",
    "ibo": "ig", "yor": "yo", "swa": "sw", "som": "so", "mlg": "mg",
    "sqi": "sq", "mkd": "mk", "bos": "bs", "srp": "sr", "mlt": "mt",
    "eus": "eu", "cat": "ca", "glg": "gl", "ast": "ast", "oci": "oc",
    "bre": "br", "cym": "cy", "gle": "ga", "gla": "gd", "isl": "is",
    "fao": "fo", "fry": "fy", "ltz": "lb", "yid": "yi", "bel": "be",
    "ukr": "uk", "bak": "ba", "tat": "tt", "chv": "cv",
}


def get_language_tag(lang_code: str) -> str:
    """Get the synthetic token for a language code (e.g. 'en' -> '__en__')."""
    return f"__{lang_code}__"


def is_language_tag(token: str) -> bool:
    """True for tokens shaped like a language tag (wrapped in double underscores)."""
    return len(token) > 4 and token.startswith("__") and token.endswith("__")


def normalize_language_code(lang_code: str) -> str:
    """
    Normalize a caller-supplied language code.

    Lower-cases the code and maps three-letter ISO codes onto the model's
    codes; anything else is returned lower-cased and unchanged.
    """
    if not isinstance(lang_code, str):
        raise TypeError(f"language code must be a string, got {type(lang_code).__name__}")
    code = lang_code.strip().lower()
    return ISO639_3_TO_FAIRSEQ.get(code, code)
