"""
Multilingual Translation Tokenizer
Vocabulary, language tags and subword segmentation for SMALL-100 style models
"""

from __future__ import annotations

import json
import re
from functools import lru_cache
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import sentencepiece as spm  # type: ignore[import-untyped]
import torch

from .config import TokenizerConfig
from .errors import TokenizerConfigError, TokenizerNotLoadedError, UnsupportedLanguageError
from .languages import FAIRSEQ_LANGUAGE_CODES, get_language_tag, is_language_tag
from .utils import logger

__all__ = [
    "SENTINEL",
    "Vocabulary",
    "LanguageTable",
    "SpecialTokens",
    "LanguagePairIds",
    "TranslationTokenizer",
    "GreedyVocabTokenizer",
    "BPEMergeTokenizer",
    "SentencePieceTokenizer",
    "build_tokenizer",
]

# Word-start marker used in place of spaces (SentencePiece convention)
SENTINEL = "▁"

# Distinct words memoized per BPE tokenizer
DEFAULT_BPE_CACHE_SIZE = 4096

DEFAULT_SPECIAL_TOKENS = {
    "pad_token": ("<pad>", 0),
    "bos_token": ("<s>", 1),
    "eos_token": ("</s>", 2),
    "unk_token": ("<unk>", 3),
}

TokenIds = Union[Sequence[int], torch.Tensor]


# ============================================================================
# VOCABULARY
# ============================================================================

class Vocabulary:
    """
    Bidirectional token <-> id table with dense ids ``0..N-1``.
    """

    def __init__(self, token_to_id: Mapping[str, int]) -> None:
        id_to_token: Dict[int, str] = {}
        for token, token_id in token_to_id.items():
            if not isinstance(token_id, int) or isinstance(token_id, bool):
                raise TokenizerConfigError(
                    f"Vocabulary id for {token!r} must be an integer, got {type(token_id).__name__}"
                )
            if token_id < 0:
                raise TokenizerConfigError(f"Vocabulary id for {token!r} is negative: {token_id}")
            if token_id in id_to_token:
                raise TokenizerConfigError(
                    f"Vocabulary id {token_id} is assigned to both {id_to_token[token_id]!r} and {token!r}"
                )
            id_to_token[token_id] = token

        size = len(id_to_token)
        if id_to_token and max(id_to_token) != size - 1:
            missing = next(i for i in range(size) if i not in id_to_token)
            raise TokenizerConfigError(
                f"Vocabulary ids must be dense in [0, {size}); id {missing} is missing"
            )

        self.token_to_id: Dict[str, int] = dict(token_to_id)
        self.id_to_token: Dict[int, str] = id_to_token

    @classmethod
    def from_json_bytes(cls, data: bytes) -> "Vocabulary":
        """Parse a flat JSON object mapping token string to integer id."""
        try:
            payload = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise TokenizerConfigError(f"vocab.json is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise TokenizerConfigError(
                f"vocab.json must contain a JSON object, got {type(payload).__name__}"
            )
        return cls(payload)

    def __len__(self) -> int:
        return len(self.id_to_token)

    def __contains__(self, token: object) -> bool:
        return token in self.token_to_id

    def id_for(self, token: str) -> Optional[int]:
        return self.token_to_id.get(token)

    def token_for(self, token_id: int) -> Optional[str]:
        return self.id_to_token.get(token_id)


class LanguageTable:
    """
    Synthetic language tokens (``__xx__``) placed right after the base vocabulary.

    The id of a code is ``offset + position``; the table is a pure function
    of the ordered code list and the offset.
    """

    def __init__(self, codes: Sequence[str], offset: int) -> None:
        if len(set(codes)) != len(codes):
            raise TokenizerConfigError("Language codes must be unique")
        self.codes: List[str] = list(codes)
        self.offset = offset
        self.token_to_id: Dict[str, int] = {
            get_language_tag(code): offset + i for i, code in enumerate(self.codes)
        }
        self.id_to_token: Dict[int, str] = {v: k for k, v in self.token_to_id.items()}
        self._code_to_id: Dict[str, int] = {
            code: offset + i for i, code in enumerate(self.codes)
        }

    def __len__(self) -> int:
        return len(self.codes)

    def __contains__(self, code: object) -> bool:
        return code in self._code_to_id

    def token_for(self, code: str) -> str:
        self._check(code)
        return get_language_tag(code)

    def id_for(self, code: str, role: str = "language") -> int:
        self._check(code, role)
        return self._code_to_id[code]

    def code_for_id(self, token_id: int) -> Optional[str]:
        token = self.id_to_token.get(token_id)
        return token[2:-2] if token is not None else None

    def token_for_id(self, token_id: int) -> Optional[str]:
        return self.id_to_token.get(token_id)

    def _check(self, code: str, role: str = "language") -> None:
        if code not in self._code_to_id:
            raise UnsupportedLanguageError(code, self.codes, role=role)


@dataclass(frozen=True)
class SpecialTokens:
    """Resolved special-token strings and ids."""

    pad_token: str
    bos_token: str
    eos_token: str
    unk_token: str
    pad_id: int
    bos_id: int
    eos_id: int
    unk_id: int

    @property
    def tokens(self) -> Tuple[str, str, str, str]:
        return (self.pad_token, self.bos_token, self.eos_token, self.unk_token)

    @property
    def ids(self) -> Tuple[int, int, int, int]:
        return (self.pad_id, self.bos_id, self.eos_id, self.unk_id)


@dataclass(frozen=True)
class LanguagePairIds:
    """
    Per-request ids for a (source, target) pair.

    The decoder starts from the target language tag; when the model encodes
    the source language through the eos slot, ``eos_id`` is the source
    language tag instead of the vocabulary eos.
    """

    source_lang: str
    target_lang: str
    source_id: int
    target_id: int
    decoder_start_id: int
    eos_id: int


def _resolve_special_tokens(vocab: Vocabulary, config: Optional[TokenizerConfig]) -> SpecialTokens:
    resolved: Dict[str, Tuple[str, int]] = {}
    for role, (default_token, default_id) in DEFAULT_SPECIAL_TOKENS.items():
        configured_token = getattr(config, role, None) if config is not None else None
        configured_id = config.token_ids.get(role) if config is not None else None
        token = configured_token or default_token

        if configured_id is not None:
            token_id = configured_id
        elif token in vocab:
            token_id = vocab.token_to_id[token]
        elif default_token in vocab:
            token = default_token
            token_id = vocab.token_to_id[default_token]
        else:
            logger.warning(
                "Special token %s not found in vocabulary; using default id %d", token, default_id
            )
            token_id = default_id
        resolved[role] = (token, token_id)

    return SpecialTokens(
        pad_token=resolved["pad_token"][0],
        bos_token=resolved["bos_token"][0],
        eos_token=resolved["eos_token"][0],
        unk_token=resolved["unk_token"][0],
        pad_id=resolved["pad_token"][1],
        bos_id=resolved["bos_token"][1],
        eos_id=resolved["eos_token"][1],
        unk_id=resolved["unk_token"][1],
    )


# ============================================================================
# TOKENIZER INTERFACE
# ============================================================================

class TranslationTokenizer(ABC):
    """
    Tokenizer for multilingual translation models.

    Subclasses only decide how text is split into pieces; vocabulary
    lookup, language tags, special tokens and decoding are shared. The
    tokenizer is immutable once its vocabulary is loaded: per-request
    language ids are returned by :meth:`language_pair_ids` instead of being
    stored on the instance.
    """

    kind: str = ""

    def __init__(
        self,
        languages: Optional[Sequence[str]] = None,
        tokenizer_config: Optional[TokenizerConfig] = None,
        max_subword_length: int = 16,
        num_madeup_words: int = 8,
    ) -> None:
        """
        Args:
            languages: Ordered language codes (order defines language ids)
            tokenizer_config: Optional special-token overrides
            max_subword_length: Longest candidate tried by greedy matching
            num_madeup_words: Extra output slots after the language ids
        """
        if max_subword_length < 1:
            raise ValueError(f"max_subword_length must be >= 1, got {max_subword_length}")
        self.languages: List[str] = list(languages) if languages is not None else list(FAIRSEQ_LANGUAGE_CODES)
        self.tokenizer_config = tokenizer_config
        self.max_subword_length = max_subword_length
        self.num_madeup_words = num_madeup_words

        self.vocab: Optional[Vocabulary] = None
        self.lang_table: Optional[LanguageTable] = None
        self.specials: Optional[SpecialTokens] = None
        self.special_tokens: List[str] = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_vocab(self, vocab: Union[Vocabulary, bytes, Mapping[str, int]]) -> None:
        """Load the base vocabulary and derive language ids and special tokens."""
        if isinstance(vocab, (bytes, bytearray)):
            vocab = Vocabulary.from_json_bytes(bytes(vocab))
        elif not isinstance(vocab, Vocabulary):
            vocab = Vocabulary(vocab)

        self.vocab = vocab
        self.lang_table = LanguageTable(self.languages, offset=len(vocab))
        self.specials = _resolve_special_tokens(vocab, self.tokenizer_config)

        special_tokens = list(self.specials.tokens)
        if self.tokenizer_config is not None:
            special_tokens.extend(
                token for token in self.tokenizer_config.added_tokens if token not in special_tokens
            )
        self.special_tokens = special_tokens

        logger.info(
            "Tokenizer (%s) loaded: base_vocab=%d, languages=%d, total=%d",
            self.kind, len(vocab), len(self.lang_table), self.get_vocab_size(),
        )

    @property
    def is_loaded(self) -> bool:
        return self.vocab is not None

    def _ensure_loaded(self) -> Tuple[Vocabulary, LanguageTable, SpecialTokens]:
        if self.vocab is None or self.lang_table is None or self.specials is None:
            raise TokenizerNotLoadedError()
        return self.vocab, self.lang_table, self.specials

    # ------------------------------------------------------------------
    # Segmentation
    # ------------------------------------------------------------------

    @staticmethod
    def normalize(text: str) -> str:
        """Mark word starts: prepend the sentinel and replace every space with it."""
        return SENTINEL + text.replace(" ", SENTINEL)

    def tokenize(self, text: str) -> List[str]:
        """Split text into vocabulary pieces (unknown characters become the unk token)."""
        self._ensure_loaded()
        return self._pieces(text)

    @abstractmethod
    def _pieces(self, text: str) -> List[str]:
        ...

    def _lookup(self, piece: str) -> Optional[int]:
        vocab, lang_table, _ = self._ensure_loaded()
        token_id = vocab.id_for(piece)
        if token_id is None:
            token_id = lang_table.token_to_id.get(piece)
        return token_id

    def _greedy_segment(self, text: str) -> List[str]:
        """Greedy longest-match; characters with no match map to the unk token."""
        _, _, specials = self._ensure_loaded()
        pieces: List[str] = []
        pos = 0
        while pos < len(text):
            for length in range(min(self.max_subword_length, len(text) - pos), 0, -1):
                candidate = text[pos:pos + length]
                if self._lookup(candidate) is not None:
                    pieces.append(candidate)
                    pos += length
                    break
            else:
                pieces.append(specials.unk_token)
                pos += 1
        return pieces

    def convert_tokens_to_ids(self, tokens: Iterable[str]) -> List[int]:
        _, _, specials = self._ensure_loaded()
        ids = []
        for token in tokens:
            token_id = self._lookup(token)
            ids.append(specials.unk_id if token_id is None else token_id)
        return ids

    def convert_ids_to_tokens(self, token_ids: Iterable[int]) -> List[str]:
        vocab, lang_table, specials = self._ensure_loaded()
        tokens = []
        for token_id in token_ids:
            token = vocab.token_for(token_id)
            if token is None:
                token = lang_table.token_for_id(token_id)
            tokens.append(specials.unk_token if token is None else token)
        return tokens

    # ------------------------------------------------------------------
    # Encode / decode
    # ------------------------------------------------------------------

    def language_pair_ids(
        self,
        src_lang: str,
        tgt_lang: str,
        source_language_as_eos: bool = True,
    ) -> LanguagePairIds:
        """
        Resolve the ids a translation request needs.

        Raises:
            UnsupportedLanguageError: If either code has no language tag
        """
        _, lang_table, specials = self._ensure_loaded()
        source_id = lang_table.id_for(src_lang, role="source language")
        target_id = lang_table.id_for(tgt_lang, role="target language")
        return LanguagePairIds(
            source_lang=src_lang,
            target_lang=tgt_lang,
            source_id=source_id,
            target_id=target_id,
            decoder_start_id=target_id,
            eos_id=source_id if source_language_as_eos else specials.eos_id,
        )

    def encode(
        self,
        text: str,
        src_lang: Optional[str] = None,
        mode: str = "source",
        eos_id: Optional[int] = None,
        max_length: Optional[int] = None,
        return_tensors: bool = False,
    ) -> Dict[str, Union[List[List[int]], torch.Tensor]]:
        """
        Encode text to a single-row batch of token IDs.

        Args:
            text: Input text
            src_lang: Source language code (required in source mode)
            mode: 'source' (prefix language tag, suffix eos) or 'target' (suffix eos)
            eos_id: Suffix id; defaults to the vocabulary eos
            max_length: Truncate the content so the full row fits (None = no limit)
            return_tensors: Return a (1, seq_len) LongTensor instead of nested lists

        Returns:
            Dictionary with 'input_ids'
        """
        _, lang_table, specials = self._ensure_loaded()

        if mode == "source":
            if not src_lang:
                raise ValueError("src_lang is required when encoding in source mode")
            prefix = [lang_table.id_for(src_lang, role="source language")]
        elif mode == "target":
            prefix = []
        else:
            raise ValueError(f"mode must be 'source' or 'target', got {mode!r}")
        suffix = [specials.eos_id if eos_id is None else eos_id]

        content = self.convert_tokens_to_ids(self._pieces(text))
        if max_length is not None:
            budget = max(max_length - len(prefix) - len(suffix), 0)
            content = content[:budget]

        ids = prefix + content + suffix
        if return_tensors:
            return {"input_ids": torch.tensor([ids], dtype=torch.long)}
        return {"input_ids": [ids]}

    def decode(self, token_ids: TokenIds, skip_special_tokens: bool = True) -> str:
        """
        Decode token IDs to text.

        Args:
            token_ids: Token IDs (list or 1-D tensor)
            skip_special_tokens: Drop special tokens and language tags

        Returns:
            Decoded text with sentinels turned back into spaces
        """
        self._ensure_loaded()
        if isinstance(token_ids, torch.Tensor):
            token_ids = token_ids.tolist()

        tokens = self.convert_ids_to_tokens(int(t) for t in token_ids)
        if skip_special_tokens:
            special = set(self.special_tokens)
            tokens = [t for t in tokens if t not in special and not is_language_tag(t)]

        return "".join(tokens).replace(SENTINEL, " ").strip()

    def batch_decode(
        self,
        token_ids_batch: Sequence[TokenIds],
        skip_special_tokens: bool = True
    ) -> List[str]:
        return [self.decode(ids, skip_special_tokens) for ids in token_ids_batch]

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def pad_token_id(self) -> int:
        return self._ensure_loaded()[2].pad_id

    @property
    def bos_token_id(self) -> int:
        return self._ensure_loaded()[2].bos_id

    @property
    def eos_token_id(self) -> int:
        return self._ensure_loaded()[2].eos_id

    @property
    def unk_token_id(self) -> int:
        return self._ensure_loaded()[2].unk_id

    @property
    def vocab_size(self) -> int:
        """Size of the base vocabulary."""
        vocab, _, _ = self._ensure_loaded()
        return len(vocab)

    def get_lang_id(self, lang_code: str) -> int:
        _, lang_table, _ = self._ensure_loaded()
        return lang_table.id_for(lang_code)

    def get_vocab_size(self) -> int:
        """Model output size: base vocabulary + language tags + made-up word slots."""
        vocab, lang_table, _ = self._ensure_loaded()
        return len(vocab) + len(lang_table) + self.num_madeup_words


# ============================================================================
# VARIANTS
# ============================================================================

class GreedyVocabTokenizer(TranslationTokenizer):
    """Vocabulary-only tokenizer: greedy longest-match over the sentinel-normalized text."""

    kind = "vocab"

    def _pieces(self, text: str) -> List[str]:
        return self._greedy_segment(self.normalize(text))


class BPEMergeTokenizer(TranslationTokenizer):
    """
    Byte-pair merges applied per word, ranked by their order in ``merges.txt``.

    Pieces the merges produce but the vocabulary lacks are re-segmented with
    greedy longest-match.
    """

    kind = "bpe"
    _WORD_RE = re.compile(f"{SENTINEL}[^{SENTINEL}]*|[^{SENTINEL}]+")

    def __init__(
        self,
        merges: Sequence[Tuple[str, str]],
        bpe_cache_size: int = DEFAULT_BPE_CACHE_SIZE,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.merge_ranks: Dict[Tuple[str, str], int] = {pair: i for i, pair in enumerate(merges)}
        self._bpe = lru_cache(maxsize=bpe_cache_size)(self._merge_word)

    @staticmethod
    def parse_merges(data: Union[bytes, str]) -> List[Tuple[str, str]]:
        """Parse ``left right`` lines; blank lines and ``#`` headers are skipped."""
        text = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data
        merges: List[Tuple[str, str]] = []
        for line_no, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) != 2:
                raise TokenizerConfigError(f"merges.txt line {line_no}: expected 2 symbols, got {len(parts)}")
            merges.append((parts[0], parts[1]))
        return merges

    def _merge_word(self, word: str) -> Tuple[str, ...]:
        symbols = list(word)
        while len(symbols) > 1:
            ranked = [
                (self.merge_ranks.get((symbols[i], symbols[i + 1]), None), i)
                for i in range(len(symbols) - 1)
            ]
            candidates = [(rank, i) for rank, i in ranked if rank is not None]
            if not candidates:
                break
            best_rank = min(rank for rank, _ in candidates)
            pair = next((symbols[i], symbols[i + 1]) for rank, i in candidates if rank == best_rank)

            merged: List[str] = []
            i = 0
            while i < len(symbols):
                if i < len(symbols) - 1 and (symbols[i], symbols[i + 1]) == pair:
                    merged.append(symbols[i] + symbols[i + 1])
                    i += 2
                else:
                    merged.append(symbols[i])
                    i += 1
            symbols = merged
        return tuple(symbols)

    def _pieces(self, text: str) -> List[str]:
        pieces: List[str] = []
        for word in self._WORD_RE.findall(self.normalize(text)):
            for piece in self._bpe(word):
                if self._lookup(piece) is not None:
                    pieces.append(piece)
                else:
                    pieces.extend(self._greedy_segment(piece))
        return pieces


class SentencePieceTokenizer(TranslationTokenizer):
    """
    Pieces come from a SentencePiece model; ids come from ``vocab.json``.

    SentencePiece applies its own normalization (including the word-start
    sentinel), so the greedy normalization is not used here.
    """

    kind = "sentencepiece"

    def __init__(self, sp_model: spm.SentencePieceProcessor, **kwargs) -> None:
        super().__init__(**kwargs)
        self.sp_model = sp_model

    @classmethod
    def from_model_bytes(cls, data: bytes, **kwargs) -> "SentencePieceTokenizer":
        try:
            processor = spm.SentencePieceProcessor(model_proto=data)
        except (RuntimeError, OSError, TypeError) as e:
            raise TokenizerConfigError(f"Invalid SentencePiece model: {e}") from e
        return cls(processor, **kwargs)

    def _pieces(self, text: str) -> List[str]:
        _, _, specials = self._ensure_loaded()
        pieces = self.sp_model.encode(text, out_type=str)
        return [p if self._lookup(p) is not None else specials.unk_token for p in pieces]


def build_tokenizer(
    kind: str,
    vocab: Union[Vocabulary, bytes, Mapping[str, int]],
    languages: Optional[Sequence[str]] = None,
    tokenizer_config: Optional[TokenizerConfig] = None,
    merges: Optional[Union[bytes, str]] = None,
    sp_model: Optional[bytes] = None,
    max_subword_length: int = 16,
    num_madeup_words: int = 8,
) -> TranslationTokenizer:
    """
    Single construction entry point for all tokenizer variants.

    Args:
        kind: 'vocab', 'bpe' or 'sentencepiece'
        vocab: Vocabulary object, vocab.json bytes, or token -> id mapping
        languages: Ordered language codes
        tokenizer_config: Optional special-token overrides
        merges: merges.txt contents (required for 'bpe')
        sp_model: SentencePiece model bytes (required for 'sentencepiece')

    Returns:
        A loaded tokenizer
    """
    common = dict(
        languages=languages,
        tokenizer_config=tokenizer_config,
        max_subword_length=max_subword_length,
        num_madeup_words=num_madeup_words,
    )
    tokenizer: TranslationTokenizer
    if kind == "vocab":
        tokenizer = GreedyVocabTokenizer(**common)
    elif kind == "bpe":
        if merges is None:
            raise TokenizerConfigError("The 'bpe' tokenizer requires merge rules")
        tokenizer = BPEMergeTokenizer(BPEMergeTokenizer.parse_merges(merges), **common)
    elif kind == "sentencepiece":
        if sp_model is None:
            raise TokenizerConfigError("The 'sentencepiece' tokenizer requires a SentencePiece model")
        tokenizer = SentencePieceTokenizer.from_model_bytes(sp_model, **common)
    else:
        raise TokenizerConfigError(
            f"Unknown tokenizer kind '{kind}'. Expected one of: vocab, bpe, sentencepiece"
        )

    tokenizer.load_vocab(vocab)
    return tokenizer
