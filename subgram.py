"""subgram: subword skip-gram embeddings in pure Python.

Trains word embeddings whose input representation is the sum of a word
vector and the vectors of the word's hashed character n-grams, with one of
three context models:

    skipgram    one output vector per context word
    dirgram     one output vector per context word and direction
    structgram  one output vector per context word and signed offset

Logistic loss with negative sampling from a Zipf distribution over frequency
ranks, optimised with lock-free SGD from several threads over shared
matrices.

::

    emb = Embeddings.train("corpus.txt", dims=100, epochs=5)
    emb.word_vector("unseen")               # built from n-gram buckets
    emb.most_similar("berlin", k=5)         # → [("hamburg", 0.83), ...]

    # From any iterable of token lists (spills to temp file):
    sents = [["the", "quick", "fox"], ["the", "lazy", "dog"]]
    emb = Embeddings.train(sents, mincount=1, dims=50)

Requires only **numpy** and **numba**. The training kernel releases the GIL,
so plain ``threading`` threads run it in parallel.
"""

from __future__ import annotations

import argparse
import enum
import math
import os
import sys
import tempfile
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Iterable, Iterator, NamedTuple

import numpy as np
from numba import njit


# ── errors ───────────────────────────────────────────────────────────────────


class SubgramError(Exception):
    """Base class of every error raised while preparing or running training."""


class ConfigError(SubgramError, ValueError):
    """Invalid hyperparameters."""


class CorpusError(SubgramError):
    """Missing, unreadable or empty corpus."""


class VocabularyError(SubgramError):
    """No word survived the frequency cutoff."""


class NumericDivergenceError(SubgramError):
    """A non-finite value appeared in an embedding matrix."""


class ThreadError(SubgramError):
    """A training worker raised."""


class TrainerStateError(SubgramError):
    """A trainer operation was called in the wrong state."""


# ── public helpers ────────────────────────────────────────────────────────────

def iter_lines(path: str) -> Iterator[list[str]]:
    """Yield tokenized lines from a text file."""
    with open(path, encoding="utf-8", errors="replace") as f:
        for line in f:
            tokens = line.split()
            if tokens:
                yield tokens


def iter_corpus(path: str) -> Iterator[list[str]]:
    """Like iter_lines, but read failures surface as CorpusError."""
    try:
        yield from iter_lines(path)
    except OSError as e:
        raise CorpusError(f"cannot read corpus {path!r}: {e}") from e


def default_threads() -> int:
    return max(1, min((os.cpu_count() or 2) // 2, 20))


# ── deterministic hash (64-bit FNV-1a over UTF-8) ────────────────────────────

_FNV_OFFSET = np.uint64(0xCBF29CE484222325)
_FNV_PRIME = np.uint64(0x100000001B3)


@njit(cache=True)
def _fnv1a_update(h, cp):
    """Feed the UTF-8 encoding of code point *cp* into FNV-1a state *h*."""
    if cp < 0x80:
        h = (h ^ np.uint64(cp)) * _FNV_PRIME
    elif cp < 0x800:
        h = (h ^ np.uint64(0xC0 | (cp >> 6))) * _FNV_PRIME
        h = (h ^ np.uint64(0x80 | (cp & 0x3F))) * _FNV_PRIME
    elif cp < 0x10000:
        h = (h ^ np.uint64(0xE0 | (cp >> 12))) * _FNV_PRIME
        h = (h ^ np.uint64(0x80 | ((cp >> 6) & 0x3F))) * _FNV_PRIME
        h = (h ^ np.uint64(0x80 | (cp & 0x3F))) * _FNV_PRIME
    else:
        h = (h ^ np.uint64(0xF0 | (cp >> 18))) * _FNV_PRIME
        h = (h ^ np.uint64(0x80 | ((cp >> 12) & 0x3F))) * _FNV_PRIME
        h = (h ^ np.uint64(0x80 | ((cp >> 6) & 0x3F))) * _FNV_PRIME
        h = (h ^ np.uint64(0x80 | (cp & 0x3F))) * _FNV_PRIME
    return h


@njit(cache=True)
def _subword_buckets(cps, minn, maxn, mask, out):
    """Write the bucket of every minn..maxn code point n-gram of *cps*.

    N-grams are enumerated by start position, then by length; the hash is
    extended one code point at a time. Returns the number written.
    """
    n = 0
    ncp = len(cps)
    for i in range(ncp):
        h = _FNV_OFFSET
        for k in range(i, min(ncp, i + maxn)):
            h = _fnv1a_update(h, cps[k])
            if k - i + 1 >= minn:
                out[n] = np.int64(h & mask)
                n += 1
    return n


class SubwordHasher:
    """Map a word to the hashed buckets of its character n-grams.

    The word is bracketed as ``<word>`` and every substring of *minn* to
    *maxn* code points is hashed into one of ``2**buckets`` buckets. *offset*
    is added to each bucket so results address input-matrix rows directly.
    The result is a multiset: a repeated n-gram yields its bucket twice.
    """

    __slots__ = ("minn", "maxn", "buckets", "no_subwords", "offset", "_mask")

    def __init__(self, minn: int = 3, maxn: int = 6, buckets: int = 21,
                 no_subwords: bool = False, offset: int = 0):
        if minn < 1:
            raise ConfigError(f"minn must be at least 1, got {minn}")
        if minn > maxn:
            raise ConfigError(
                f"minn ({minn}) must not be larger than maxn ({maxn})")
        if not 1 <= buckets <= 32:
            raise ConfigError(
                f"bucket exponent must be in 1..32, got {buckets}")
        self.minn, self.maxn = minn, maxn
        self.buckets = buckets
        self.no_subwords = no_subwords
        self.offset = offset
        self._mask = np.uint64((1 << buckets) - 1)

    def with_offset(self, offset: int) -> SubwordHasher:
        return SubwordHasher(self.minn, self.maxn, self.buckets,
                             self.no_subwords, offset)

    @property
    def n_buckets(self) -> int:
        """Number of bucket rows the input matrix needs (0 without subwords)."""
        return 0 if self.no_subwords else 1 << self.buckets

    def ngrams(self, word: str) -> list[str]:
        if self.no_subwords:
            return []
        b = f"<{word}>"
        return [b[i:i + n]
                for i in range(len(b))
                for n in range(self.minn, self.maxn + 1)
                if i + n <= len(b)]

    def bucket_ids(self, word: str) -> np.ndarray:
        """Buckets in ``[0, 2**buckets)``, in n-gram enumeration order."""
        if self.no_subwords:
            return np.empty(0, np.int64)
        cps = np.array([ord(c) for c in f"<{word}>"], dtype=np.int64)
        out = np.empty(len(cps) * (self.maxn - self.minn + 1), np.int64)
        n = _subword_buckets(cps, np.int64(self.minn), np.int64(self.maxn),
                             self._mask, out)
        return out[:n]

    def indices(self, word: str) -> np.ndarray:
        """Input-matrix rows of the word's buckets."""
        return self.bucket_ids(word) + self.offset


# ── vocabulary ───────────────────────────────────────────────────────────────


def discard_probabilities(counts: np.ndarray, threshold: float) -> np.ndarray:
    """Per-word probability of skipping an occurrence during training.

    With relative frequency ``p`` and ``r = threshold / p`` this is
    ``1 - min(1, r + sqrt(r))``: words rarer than about *threshold* are
    never skipped, frequent words are skipped more often.
    """
    p = np.asarray(counts, np.float64) / float(np.sum(counts))
    r = threshold / p
    keep = np.minimum(1.0, r + np.sqrt(r))
    return np.clip(1.0 - keep, 0.0, 1.0).astype(np.float32)


class VocabEntry(NamedTuple):
    token: str
    index: int
    count: int
    discard_probability: float


@dataclass
class Vocab:
    """Frequency-sorted vocabulary; ``index + 1`` is the frequency rank.

    Subword rows of each word are cached as a CSR pair: the rows of word
    ``i`` are ``sub_ids[sub_offsets[i]:sub_offsets[i + 1]]``.
    """
    words: list[str]            = field(default_factory=list)
    counts: np.ndarray          = field(
        default_factory=lambda: np.zeros(0, np.int64))
    discards: np.ndarray        = field(
        default_factory=lambda: np.zeros(0, np.float32))
    w2i: dict[str, int]         = field(default_factory=dict)
    ntokens: int                = 0
    hasher: SubwordHasher       = field(default_factory=SubwordHasher)
    sub_offsets: np.ndarray     = field(
        default_factory=lambda: np.zeros(1, np.int64))
    sub_ids: np.ndarray         = field(
        default_factory=lambda: np.zeros(0, np.int64))

    @property
    def nwords(self) -> int:
        return len(self.words)

    def __len__(self) -> int:
        return len(self.words)

    def __contains__(self, word: str) -> bool:
        return word in self.w2i

    def __getitem__(self, idx: int) -> VocabEntry:
        return VocabEntry(self.words[idx], idx, int(self.counts[idx]),
                          float(self.discards[idx]))

    def index(self, word: str) -> int:
        """Vocabulary index of *word*, -1 when unknown."""
        return self.w2i.get(word, -1)

    def subword_indices(self, idx: int) -> np.ndarray:
        return self.sub_ids[self.sub_offsets[idx]:self.sub_offsets[idx + 1]]

    def encode(self, tokens: list[str]) -> np.ndarray:
        """Indices of the known tokens; unknown tokens are dropped."""
        w2i = self.w2i
        return np.array([w2i[t] for t in tokens if t in w2i], dtype=np.int32)

    def encode_corpus(self, sentences: Iterable[list[str]]
                      ) -> tuple[np.ndarray, np.ndarray]:
        """Flatten sentences into (tokens, offsets).

        Sentence ``s`` is ``tokens[offsets[s]:offsets[s + 1]]``. Sentences
        with no known token are dropped.
        """
        chunks, lengths = [], []
        for tokens in sentences:
            ids = self.encode(tokens)
            if len(ids):
                chunks.append(ids)
                lengths.append(len(ids))
        flat = (np.concatenate(chunks) if chunks
                else np.empty(0, np.int32))
        offsets = np.zeros(len(lengths) + 1, np.int64)
        np.cumsum(np.array(lengths, np.int64), out=offsets[1:])
        return flat, offsets


def build_vocab(sentences: Iterable[list[str]], *, mincount: int = 5,
                discard: float = 1e-4,
                hasher: SubwordHasher | None = None) -> Vocab:
    """Count tokens in one pass and keep those seen at least *mincount* times."""
    counter: Counter[str] = Counter()
    n_seen = 0
    for tokens in sentences:
        counter.update(tokens)
        n_seen += len(tokens)
    if n_seen == 0:
        raise CorpusError("corpus contains no tokens")

    # Counter keeps first-occurrence order, sort is stable
    words = [w for w, c in counter.items() if c >= mincount]
    if not words:
        raise VocabularyError(
            f"no token occurs at least {mincount} times "
            f"({len(counter)} types, {n_seen} tokens)")
    words.sort(key=lambda w: -counter[w])

    counts = np.array([counter[w] for w in words], dtype=np.int64)
    hasher = (hasher or SubwordHasher()).with_offset(len(words))

    per_word = [hasher.indices(w) for w in words]
    sub_offsets = np.zeros(len(words) + 1, np.int64)
    np.cumsum(np.array([len(x) for x in per_word], np.int64),
              out=sub_offsets[1:])
    sub_ids = np.concatenate(per_word).astype(np.int64)

    return Vocab(words=words, counts=counts,
                 discards=discard_probabilities(counts, discard),
                 w2i={w: i for i, w in enumerate(words)},
                 ntokens=int(counts.sum()), hasher=hasher,
                 sub_offsets=sub_offsets, sub_ids=sub_ids)


# ── random numbers and negative sampling ─────────────────────────────────────

_LEHMER_MOD = 2147483647


@njit(cache=True)
def _lehmer(state):
    return (state * np.int64(48271)) % np.int64(2147483647)


def seed_state(seed: int, thread_id: int = 0) -> int:
    """Nonzero Lehmer state for *thread_id* derived from a global seed."""
    return (seed * 7919 + thread_id + 1) % (_LEHMER_MOD - 1) + 1


@njit(cache=True)
def _zipf_draw(cdf, state):
    """Draw one 0-based rank from cumulative table *cdf*. Returns (rank, state)."""
    state = _lehmer(state)
    u = np.float64(state) / 2147483647.0
    lo = 0
    hi = len(cdf) - 1
    while lo < hi:
        mid = (lo + hi) // 2
        if cdf[mid] > u:
            hi = mid
        else:
            lo = mid + 1
    return lo, state


@njit(cache=True)
def _zipf_fill(cdf, out, state):
    for i in range(len(out)):
        r, state = _zipf_draw(cdf, state)
        out[i] = r
    return state


class NegativeSampler:
    """Zipf distribution over frequency ranks.

    Rank ``k`` (1-based) has probability ``1 / (k**s * H(N, s))``. Draws are
    returned as ``k - 1``, which is the vocabulary index because the
    vocabulary is sorted by descending count.
    """

    __slots__ = ("exponent", "probs", "cdf")

    def __init__(self, n: int, exponent: float = 0.5):
        if n < 1:
            raise VocabularyError("cannot sample from an empty vocabulary")
        weights = np.arange(1, n + 1, dtype=np.float64) ** -exponent
        self.exponent = exponent
        self.probs = weights / weights.sum()
        self.cdf = np.cumsum(self.probs)
        self.cdf[-1] = 1.0

    def __len__(self) -> int:
        return len(self.probs)

    def sample(self, n: int, seed: int = 0) -> np.ndarray:
        out = np.empty(n, np.int64)
        _zipf_fill(self.cdf, out, np.int64(seed_state(seed)))
        return out


# ── context models ───────────────────────────────────────────────────────────


class ModelType(enum.IntEnum):
    SKIPGRAM = 0
    DIRGRAM = 1
    STRUCTGRAM = 2

    @classmethod
    def parse(cls, name: str) -> ModelType:
        try:
            return cls[name.upper()]
        except KeyError:
            raise ConfigError(f"unknown model type: {name!r}") from None


@njit(cache=True)
def _output_row(kind, word, offset, context):
    """Output-matrix row of context *word* at signed *offset* from the focus."""
    if kind == 0:
        return np.int64(word)
    if kind == 1:
        return np.int64(word) * 2 + (0 if offset < 0 else 1)
    if offset < 0:
        slot = offset + context
    else:
        slot = offset + context - 1
    return np.int64(word) * 2 * context + slot


@dataclass(frozen=True)
class ContextModel:
    """Resolve (context word, offset) pairs to output rows.

    ``n_slots`` rows are reserved per word: 1 for skipgram, 2 for dirgram
    (before, after) and ``2 * context`` for structgram (one per offset).
    """
    kind: ModelType = ModelType.SKIPGRAM
    context: int = 10

    @property
    def n_slots(self) -> int:
        if self.kind == ModelType.SKIPGRAM:
            return 1
        if self.kind == ModelType.DIRGRAM:
            return 2
        return 2 * self.context

    def output_row(self, word: int, offset: int) -> int:
        if offset == 0 or abs(offset) > self.context:
            raise ValueError(
                f"offset must be in ±1..{self.context}, got {offset}")
        return int(_output_row(np.int64(self.kind), np.int64(word),
                               np.int64(offset), np.int64(self.context)))

    def pairs(self, sentence, focus: int, window: int | None = None
              ) -> Iterator[tuple[int, int]]:
        """Yield (focus word, output row) for each context position of *focus*.

        *window* defaults to the full context size and is capped by it;
        positions are clipped to the sentence.
        """
        window = self.context if window is None else min(window, self.context)
        lo = max(0, focus - window)
        hi = min(len(sentence), focus + window + 1)
        word = int(sentence[focus])
        for j in range(lo, hi):
            if j != focus:
                yield word, self.output_row(int(sentence[j]), j - focus)


# ── embedding store ──────────────────────────────────────────────────────────


def _uniform(rng: np.random.Generator, shape, bound: float) -> np.ndarray:
    m = rng.random(shape, dtype=np.float32)
    m *= np.float32(2.0 * bound)
    m -= np.float32(bound)
    return m


class EmbeddingStore:
    """Input and output matrices shared by all training threads.

    Input rows ``0..nwords-1`` belong to vocabulary words, the remaining
    ``2**buckets`` rows to subword buckets. The output matrix holds
    ``n_slots`` rows per word (see ContextModel).

    Rows are updated in place without locks. Concurrent writers to the same
    row may interleave and lose part of an update; updates are sparse and
    small next to the rows, so training tolerates it.
    """

    __slots__ = ("vocab", "model", "dims", "inp", "out")

    def __init__(self, vocab: Vocab, model: ContextModel, dims: int,
                 seed: int = 0):
        rng = np.random.default_rng(seed)
        bound = 1.0 / dims
        self.vocab, self.model, self.dims = vocab, model, dims
        self.inp = _uniform(
            rng, (vocab.nwords + vocab.hasher.n_buckets, dims), bound)
        self.out = _uniform(
            rng, (vocab.nwords * model.n_slots, dims), bound)

    @property
    def output_view(self) -> np.ndarray:
        """The output matrix as (words, slots, dims)."""
        return self.out.reshape(self.vocab.nwords, self.model.n_slots,
                                self.dims)

    def input_rows(self, word: int) -> np.ndarray:
        return np.concatenate(
            ([word], self.vocab.subword_indices(word))).astype(np.int64)

    def compose_input(self, word: int) -> np.ndarray:
        """Word row plus all of its bucket rows."""
        return self.inp[self.input_rows(word)].sum(axis=0)

    def accumulate(self, row: int, delta: np.ndarray, output: bool = False):
        m = self.out if output else self.inp
        m[row] += delta

    def is_finite(self) -> bool:
        return bool(np.isfinite(self.inp).all()
                    and np.isfinite(self.out).all())


# ── training kernel ──────────────────────────────────────────────────────────
#
# One call trains one thread's shard for all epochs. Shared state lives in
# small arrays passed by reference:
#   progress[t]  tokens processed by thread t (only thread t writes it)
#   loss[t]      summed logistic loss of thread t
#   pairs[t]     number of (focus, context) pairs of thread t
#   abort[0]     set by any thread on divergence or failure
#
# fastmath leaves out nnan/ninf so the divergence checks are kept.

_FASTMATH = {"nsz", "arcp", "contract", "afn", "reassoc"}
_LR_FLOOR = 1e-4
_MAX_LOGIT = 30.0
_MAX_REDRAWS = 16


@njit(nogil=True, cache=True, fastmath=_FASTMATH)
def _logistic_step(hidden, out, row, label, lr, delta):
    """Logistic loss update of output *row* against *hidden*.

    Adds the input-side gradient to *delta* (using the row before its
    update) and moves the output row. Returns the loss, nan when the score
    is not finite.
    """
    dims = hidden.shape[0]
    dp = np.float32(0.0)
    for d in range(dims):
        dp += hidden[d] * out[row, d]
    if not np.isfinite(dp):
        return np.nan
    x = min(max(np.float64(dp), -_MAX_LOGIT), _MAX_LOGIT)
    score = 1.0 / (1.0 + math.exp(-x))
    g = lr * (label - score)
    for d in range(dims):
        delta[d] += g * out[row, d]
        out[row, d] += g * hidden[d]
    if label > 0.5:
        return -math.log(score)
    return -math.log(1.0 - score)


@njit(nogil=True, cache=True, fastmath=_FASTMATH)
def _train_shard(inp, out, tokens, offsets, sent_lo, sent_hi,
                 sub_offsets, sub_ids, discards, zipf_cdf,
                 kind, context, n_slots, epochs, ns, lr0, total_tokens,
                 progress, loss_acc, pair_acc, abort, tid, rng_state):
    """Train sentences ``sent_lo..sent_hi`` for *epochs* passes.

    Returns (status, rng_state): status 0 when done, 1 when stopped by the
    abort flag, -1 when a non-finite value appeared.
    """
    dims = inp.shape[1]
    nwords = len(discards)
    n_threads = len(progress)
    hidden = np.empty(dims, np.float32)
    delta = np.empty(dims, np.float32)

    max_len = 0
    for s in range(sent_lo, sent_hi):
        max_len = max(max_len, offsets[s + 1] - offsets[s])
    kept = np.empty(max_len, np.int32)

    for ep in range(epochs):
        for s in range(sent_lo, sent_hi):
            if abort[0] != 0:
                return 1, rng_state

            # subsampling; skipped tokens still count as processed
            n = 0
            for k in range(offsets[s], offsets[s + 1]):
                w = tokens[k]
                rng_state = _lehmer(rng_state)
                if np.float64(rng_state) / 2147483647.0 < discards[w]:
                    progress[tid] += 1
                    continue
                kept[n] = w
                n += 1

            for i in range(n):
                processed = 0
                for t in range(n_threads):
                    processed += progress[t]
                lr = lr0 * max(_LR_FLOOR, 1.0 - processed / total_tokens)

                rng_state = _lehmer(rng_state)
                window = 1 + rng_state % context
                focus = kept[i]
                a = sub_offsets[focus]
                b = sub_offsets[focus + 1]
                lo = max(0, i - window)
                hi = min(n, i + window + 1)

                for j in range(lo, hi):
                    if j == i:
                        continue
                    for d in range(dims):
                        hidden[d] = inp[focus, d]
                        delta[d] = np.float32(0.0)
                    for k in range(a, b):
                        r = sub_ids[k]
                        for d in range(dims):
                            hidden[d] += inp[r, d]

                    target = np.int64(kept[j])
                    row = _output_row(kind, target, j - i, context)
                    loss = _logistic_step(hidden, out, row, 1.0, lr, delta)

                    if nwords > 1:
                        slot = row - target * n_slots
                        for _ in range(ns):
                            neg, rng_state = _zipf_draw(zipf_cdf, rng_state)
                            tries = 1
                            while neg == target and tries < _MAX_REDRAWS:
                                neg, rng_state = _zipf_draw(zipf_cdf,
                                                            rng_state)
                                tries += 1
                            # still the target after _MAX_REDRAWS draws: skip it
                            if neg == target:
                                continue
                            loss += _logistic_step(
                                hidden, out, neg * n_slots + slot,
                                0.0, lr, delta)

                    ok = np.isfinite(loss)
                    for d in range(dims):
                        if not np.isfinite(delta[d]):
                            ok = False
                    if not ok:
                        abort[0] = 1
                        return -1, rng_state

                    # same delta for the word row and every bucket row
                    for d in range(dims):
                        inp[focus, d] += delta[d]
                    for k in range(a, b):
                        r = sub_ids[k]
                        for d in range(dims):
                            inp[r, d] += delta[d]

                    loss_acc[tid] += loss
                    pair_acc[tid] += 1

                progress[tid] += 1

    return 0, rng_state


def shard_bounds(offsets: np.ndarray, n_shards: int) -> list[tuple[int, int]]:
    """Split sentences into contiguous shards of roughly equal token count."""
    n_sent = len(offsets) - 1
    targets = offsets[-1] * np.arange(1, n_shards) / n_shards
    cuts = np.searchsorted(offsets, targets, side="left")
    bounds = np.clip(np.concatenate(([0], cuts, [n_sent])), 0, n_sent)
    return [(int(bounds[i]), int(bounds[i + 1])) for i in range(n_shards)]


# ── configuration and trainer ────────────────────────────────────────────────


@dataclass
class Config:
    dims: int           = 300
    epochs: int         = 15
    lr: float           = 0.05
    context: int        = 10
    model: ModelType    = ModelType.SKIPGRAM
    mincount: int       = 5
    discard: float      = 1e-4
    minn: int           = 3
    maxn: int           = 6
    buckets: int        = 21
    no_subwords: bool   = False
    ns: int             = 5
    zipf: float         = 0.5
    threads: int        = field(default_factory=default_threads)
    seed: int           = 0

    def __post_init__(self):
        if isinstance(self.model, str):
            self.model = ModelType.parse(self.model)

    def validate(self) -> Config:
        """Raise ConfigError on the first invalid value; returns self."""
        checks = [
            (self.dims >= 1, f"dims must be positive, got {self.dims}"),
            (self.epochs >= 0, f"epochs must be >= 0, got {self.epochs}"),
            (self.lr > 0, f"lr must be positive, got {self.lr}"),
            (self.context >= 1, f"context must be >= 1, got {self.context}"),
            (self.mincount >= 1,
             f"mincount must be >= 1, got {self.mincount}"),
            (self.discard > 0,
             f"discard threshold must be positive, got {self.discard}"),
            (self.ns >= 0, f"ns must be >= 0, got {self.ns}"),
            (self.zipf >= 0, f"zipf exponent must be >= 0, got {self.zipf}"),
            (self.threads >= 1, f"threads must be >= 1, got {self.threads}"),
        ]
        for ok, msg in checks:
            if not ok:
                raise ConfigError(msg)
        self.hasher()
        return self

    def hasher(self) -> SubwordHasher:
        return SubwordHasher(self.minn, self.maxn, self.buckets,
                             self.no_subwords)

    def context_model(self) -> ContextModel:
        return ContextModel(self.model, self.context)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["model"] = self.model.name.lower()
        return d


def _now() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class TrainInfo:
    """Where a model was trained from and written to, and when."""
    corpus: str
    output: str = ""
    n_threads: int = 1
    start_datetime: str = field(default_factory=_now)
    end_datetime: str | None = None

    def finish(self):
        self.end_datetime = _now()


class TrainingState:
    """Counters shared by reference between the workers of one run."""

    __slots__ = ("progress", "loss", "pairs", "abort", "total_tokens", "lr")

    def __init__(self, n_threads: int, total_tokens: int, lr: float):
        self.progress = np.zeros(n_threads, np.int64)
        self.loss = np.zeros(n_threads, np.float64)
        self.pairs = np.zeros(n_threads, np.int64)
        self.abort = np.zeros(1, np.int32)
        self.total_tokens = max(int(total_tokens), 1)
        self.lr = lr

    @property
    def tokens_processed(self) -> int:
        return int(self.progress.sum())

    def learning_rate(self, processed: int | None = None) -> float:
        if processed is None:
            processed = self.tokens_processed
        return self.lr * max(_LR_FLOOR,
                             1.0 - processed / self.total_tokens)

    @property
    def train_loss(self) -> float:
        """Mean loss per (focus, context) pair so far."""
        return float(self.loss.sum()) / max(int(self.pairs.sum()), 1)


class TrainerState(enum.Enum):
    IDLE = "idle"
    VOCAB_BUILT = "vocab_built"
    TRAINING = "training"
    DONE = "done"
    FAILED = "failed"


class Trainer:
    """Build the vocabulary, then train with one thread per corpus shard.

    ::

        trainer = Trainer(Config(dims=100, epochs=5))
        trainer.build_vocab("corpus.txt")
        emb = trainer.train()
    """

    def __init__(self, config: Config | None = None, *, verbose: int = 2,
                 report_delay: float = 1.0):
        self.config = (config or Config()).validate()
        self.verbose = verbose
        self.report_delay = report_delay
        self.state = TrainerState.IDLE
        self.vocab: Vocab | None = None
        self.tokens = np.empty(0, np.int32)
        self.offsets = np.zeros(1, np.int64)
        self.store: EmbeddingStore | None = None
        self.progress: TrainingState | None = None
        self.history: list[dict] = []
        self.corpus: str | None = None
        self.info: TrainInfo | None = None

    def _expect(self, state: TrainerState):
        if self.state is not state:
            raise TrainerStateError(
                f"expected trainer state {state.value}, "
                f"found {self.state.value}")

    @property
    def train_loss(self) -> float:
        return self.progress.train_loss if self.progress else 0.0

    # ── vocabulary ────────────────────────────────────────────────────────

    def build_vocab(self, data) -> Vocab:
        """Count and encode the corpus.

        *data* is a file path or an iterable of token lists; iterables are
        spilled to a temp file first.
        """
        self._expect(TrainerState.IDLE)
        if not isinstance(data, (str, os.PathLike)):
            tmp = tempfile.NamedTemporaryFile(
                mode="w", suffix=".txt", delete=False, encoding="utf-8")
            try:
                for tokens in data:
                    tmp.write(" ".join(tokens) + "\n")
                tmp.close()
                vocab = self.build_vocab(tmp.name)
                self.corpus = "<iterable>"
                return vocab
            finally:
                tmp.close()
                try:
                    os.unlink(tmp.name)
                except OSError:
                    pass

        path = os.fspath(data)
        if not os.path.isfile(path):
            raise CorpusError(f"corpus not found: {path!r}")

        cfg = self.config
        t0 = time.time()
        vocab = build_vocab(iter_corpus(path), mincount=cfg.mincount,
                            discard=cfg.discard, hasher=cfg.hasher())
        self.tokens, self.offsets = vocab.encode_corpus(iter_corpus(path))
        self.vocab = vocab
        self.corpus = path
        self.state = TrainerState.VOCAB_BUILT

        if self.verbose > 0:
            print(f"Read {vocab.ntokens} tokens: vocab {vocab.nwords} words, "
                  f"{vocab.hasher.n_buckets} buckets, "
                  f"{len(self.offsets) - 1} sentences "
                  f"(mincount={cfg.mincount}, {time.time() - t0:.1f}s)",
                  file=sys.stderr)
        return vocab

    # ── training ──────────────────────────────────────────────────────────

    def train(self) -> Embeddings:
        self._expect(TrainerState.VOCAB_BUILT)
        self.state = TrainerState.TRAINING
        cfg, vocab = self.config, self.vocab
        model = cfg.context_model()
        self.info = info = TrainInfo(corpus=self.corpus,
                                     n_threads=cfg.threads)

        self.store = store = EmbeddingStore(vocab, model, cfg.dims,
                                            seed=cfg.seed)
        sampler = NegativeSampler(vocab.nwords, cfg.zipf)
        self.progress = state = TrainingState(
            cfg.threads, len(self.tokens) * cfg.epochs, cfg.lr)
        shards = shard_bounds(self.offsets, cfg.threads)

        results: list[tuple[int, int] | None] = [None] * cfg.threads
        errors: list[BaseException | None] = [None] * cfg.threads

        def work(tid, lo, hi):
            try:
                results[tid] = _train_shard(
                    store.inp, store.out, self.tokens, self.offsets,
                    np.int64(lo), np.int64(hi),
                    vocab.sub_offsets, vocab.sub_ids, vocab.discards,
                    sampler.cdf,
                    np.int64(model.kind), np.int64(model.context),
                    np.int64(model.n_slots),
                    np.int64(cfg.epochs), np.int64(cfg.ns),
                    np.float64(cfg.lr), np.int64(state.total_tokens),
                    state.progress, state.loss, state.pairs, state.abort,
                    np.int64(tid), np.int64(seed_state(cfg.seed, tid)))
            except Exception as e:
                errors[tid] = e
                state.abort[0] = 1

        workers = [threading.Thread(target=work, args=(tid, lo, hi),
                                    name=f"subgram-worker-{tid}", daemon=True)
                   for tid, (lo, hi) in enumerate(shards)]
        for thread in workers:
            thread.start()
        self._wait(workers, state)

        failed = [(tid, e) for tid, e in enumerate(errors) if e is not None]
        if failed:
            self.state = TrainerState.FAILED
            tid, e = failed[0]
            raise ThreadError(f"worker {tid} failed: {e!r}") from e
        if (any(r is not None and r[0] < 0 for r in results)
                or not store.is_finite()):
            self.state = TrainerState.FAILED
            raise NumericDivergenceError(
                f"non-finite embedding values after "
                f"{state.tokens_processed} tokens "
                f"(lr={cfg.lr}, dims={cfg.dims})")

        info.finish()
        self.state = TrainerState.DONE
        return Embeddings(words=vocab.words, counts=vocab.counts,
                          matrix=store.inp, config=cfg, train_info=info)

    def _record(self, state: TrainingState):
        processed = state.tokens_processed
        self.history.append({"tokens": processed,
                             "loss": state.train_loss,
                             "lr": state.learning_rate(processed)})

    def _wait(self, workers: list[threading.Thread], state: TrainingState):
        """Join all workers, recording loss and printing progress meanwhile."""
        t0 = time.time()
        alive = list(workers)
        while alive:
            alive[0].join(self.report_delay)
            alive = [t for t in alive if t.is_alive()]
            self._record(state)
            if self.verbose > 0:
                h = self.history[-1]
                pct = min(100.0, h["tokens"] / state.total_tokens * 100.0)
                print(f"\r{pct:5.1f}%  loss={h['loss']:.4f}"
                      f"  lr={h['lr']:.5f}  ({time.time() - t0:.1f}s)",
                      end="", file=sys.stderr)
        if self.verbose > 0:
            print(f"\rDone: avg loss {state.train_loss:.4f}"
                  f"  ({time.time() - t0:.1f}s)", file=sys.stderr)


# ── trained embeddings ───────────────────────────────────────────────────────


class Embeddings:
    """Trained input matrix plus what is needed to embed unseen words.

    ::

        emb = Embeddings.train("corpus.txt", dims=100, epochs=5)
        emb.save("emb.npz")
        Embeddings.load("emb.npz").word_vector("unseen")
    """

    __slots__ = ("words", "counts", "matrix", "dims", "minn", "maxn",
                 "buckets", "no_subwords", "model", "context", "config",
                 "train_info", "_w2i", "_hasher", "_normed")

    def __init__(self, *, words: list[str], counts: np.ndarray,
                 matrix: np.ndarray, minn: int = 3, maxn: int = 6,
                 buckets: int = 21, no_subwords: bool = False,
                 model: ModelType = ModelType.SKIPGRAM, context: int = 10,
                 config: Config | None = None,
                 train_info: TrainInfo | None = None):
        """*config*, when given, takes precedence over the subword and
        model keyword arguments."""
        if config is None:
            config = Config(dims=int(matrix.shape[1]), minn=minn, maxn=maxn,
                            buckets=buckets, no_subwords=no_subwords,
                            model=ModelType(model), context=context)
        self.words = list(words)
        self.counts = np.asarray(counts, np.int64)
        self.matrix = matrix
        self.dims = int(matrix.shape[1])
        self.config = config
        self.train_info = train_info
        self.minn, self.maxn = config.minn, config.maxn
        self.buckets = config.buckets
        self.no_subwords = config.no_subwords
        self.model = ModelType(config.model)
        self.context = config.context
        self._w2i = {w: i for i, w in enumerate(self.words)}
        self._hasher = SubwordHasher(self.minn, self.maxn, self.buckets,
                                     self.no_subwords, offset=len(self.words))
        self._normed = None

    @classmethod
    def train(cls, data, config: Config | None = None, *, verbose: int = 2,
              **kwargs) -> Embeddings:
        """Train embeddings from a corpus path or an iterable of token lists.

        Keyword arguments are Config fields and are ignored when *config*
        is given.
        """
        trainer = Trainer(config or Config(**kwargs), verbose=verbose)
        trainer.build_vocab(data)
        return trainer.train()

    def __len__(self) -> int:
        return len(self.words)

    def __contains__(self, word: str) -> bool:
        return word in self._w2i

    def _rows(self, word: str) -> np.ndarray:
        sub = self._hasher.indices(word)
        idx = self._w2i.get(word)
        if idx is None:
            return sub
        return np.concatenate(([idx], sub)).astype(np.int64)

    def word_vector(self, word: str) -> np.ndarray:
        """Sum of the word row (if known) and the word's bucket rows.

        Raises KeyError for an unknown word without subword rows.
        """
        rows = self._rows(word)
        if len(rows) == 0:
            raise KeyError(word)
        return self.matrix[rows].sum(axis=0)

    def vectors(self) -> np.ndarray:
        """Composed vectors of all vocabulary words, (nwords, dims)."""
        vecs = np.empty((len(self.words), self.dims), np.float32)
        for i, w in enumerate(self.words):
            vecs[i] = self.word_vector(w)
        return vecs

    def most_similar(self, word: str, k: int = 10) -> list[tuple[str, float]]:
        """Top-k vocabulary words by cosine similarity, excluding *word*."""
        if self._normed is None:
            vecs = self.vectors()
            norms = np.linalg.norm(vecs, axis=1, keepdims=True)
            self._normed = vecs / np.maximum(norms, 1e-10)
        q = self.word_vector(word)
        q = q / max(float(np.linalg.norm(q)), 1e-10)
        sims = self._normed @ q
        order = np.argsort(-sims)
        out = []
        for i in order:
            if self.words[i] == word:
                continue
            out.append((self.words[i], float(sims[i])))
            if len(out) == k:
                break
        return out

    # ── I/O ──────────────────────────────────────────────────────────────

    def save(self, path: str):
        """Write an npz file; the train info records *path* as its output."""
        c = self.config
        arrays = dict(
            matrix=self.matrix,
            words=np.array(self.words, dtype=str),
            counts=self.counts,
            meta=np.array([c.minn, c.maxn, c.buckets, int(c.no_subwords),
                           int(c.model), c.context, c.dims, c.epochs,
                           c.mincount, c.ns, c.threads, c.seed]),
            fmeta=np.array([c.lr, c.discard, c.zipf]),
        )
        if self.train_info is not None:
            info = self.train_info
            info.output = os.fspath(path)
            arrays["info"] = np.array(
                [info.corpus or "", info.output, str(info.n_threads),
                 info.start_datetime, info.end_datetime or ""], dtype=str)
        np.savez_compressed(path, **arrays)

    @classmethod
    def load(cls, path: str) -> Embeddings:
        with np.load(path) as d:
            m = d["meta"]
            matrix = d["matrix"]
            config = Config(minn=int(m[0]), maxn=int(m[1]),
                            buckets=int(m[2]), no_subwords=bool(m[3]),
                            model=ModelType(int(m[4])), context=int(m[5]),
                            dims=int(matrix.shape[1]))
            if len(m) > 6:
                config.epochs, config.mincount = int(m[7]), int(m[8])
                config.ns, config.threads = int(m[9]), int(m[10])
                config.seed = int(m[11])
            if "fmeta" in d.files:
                fm = d["fmeta"]
                config.lr, config.discard = float(fm[0]), float(fm[1])
                config.zipf = float(fm[2])
            info = None
            if "info" in d.files:
                s = [str(x) for x in d["info"]]
                info = TrainInfo(corpus=s[0], output=s[1],
                                 n_threads=int(s[2]), start_datetime=s[3],
                                 end_datetime=s[4] or None)
            return cls(words=[str(w) for w in d["words"]],
                       counts=d["counts"], matrix=matrix,
                       config=config, train_info=info)

    def save_text(self, path: str):
        """word2vec text format: a header line, then one word per line."""
        vecs = self.vectors()
        with open(path, "w", encoding="utf-8") as f:
            f.write(f"{len(self.words)} {self.dims}\n")
            for w, v in zip(self.words, vecs):
                f.write(w + " " + " ".join(f"{x:.6f}" for x in v) + "\n")


# ── CLI ──────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(
        prog="subgram",
        description="Train subword skip-gram embeddings.")
    p.add_argument("corpus", help="tokenized corpus, one sentence per line")
    p.add_argument("output", help="embeddings output")
    p.add_argument("--buckets",  type=int,   default=21, metavar="EXP",
                   help="number of buckets: 2^EXP (default: 21)")
    p.add_argument("--context",  type=int,   default=10, metavar="N",
                   help="context size (default: 10)")
    p.add_argument("--dims",     type=int,   default=300, metavar="N",
                   help="embedding dimensionality (default: 300)")
    p.add_argument("--discard",  type=float, default=1e-4,
                   metavar="THRESHOLD",
                   help="discard threshold (default: 1e-4)")
    p.add_argument("--epochs",   type=int,   default=15, metavar="N",
                   help="number of epochs (default: 15)")
    p.add_argument("--lr",       type=float, default=0.05, metavar="RATE",
                   help="initial learning rate (default: 0.05)")
    p.add_argument("--maxn",     type=int,   default=6, metavar="LEN",
                   help="maximum n-gram length (default: 6)")
    p.add_argument("--mincount", type=int,   default=5, metavar="FREQ",
                   help="minimum token frequency (default: 5)")
    p.add_argument("--minn",     type=int,   default=3, metavar="LEN",
                   help="minimum n-gram length (default: 3)")
    p.add_argument("--model", default="skipgram",
                   choices=["skipgram", "dirgram", "structgram"])
    p.add_argument("--no_subwords", action="store_true",
                   help="train word vectors only")
    p.add_argument("--ns",       type=int,   default=5, metavar="FREQ",
                   help="negative samples per context word (default: 5)")
    p.add_argument("--threads",  type=int,   default=None, metavar="N",
                   help="number of threads "
                        "(default: min(logical_cpus / 2, 20))")
    p.add_argument("--zipf",     type=float, default=0.5, metavar="EXP",
                   help="exponent of the Zipf distribution for negative "
                        "sampling (default: 0.5)")
    p.add_argument("--seed",     type=int,   default=0)
    p.add_argument("--format", default="npz", choices=["npz", "text"])
    p.add_argument("--verbose",  type=int,   default=2)

    args = p.parse_args(argv)
    try:
        cfg = Config(
            dims=args.dims, epochs=args.epochs, lr=args.lr,
            context=args.context, model=args.model,
            mincount=args.mincount, discard=args.discard,
            minn=args.minn, maxn=args.maxn, buckets=args.buckets,
            no_subwords=args.no_subwords, ns=args.ns, zipf=args.zipf,
            threads=(default_threads() if args.threads is None
                     else args.threads),
            seed=args.seed)
        emb = Embeddings.train(args.corpus, cfg, verbose=args.verbose)
        if args.format == "text":
            emb.save_text(args.output)
        else:
            emb.save(args.output)
    except SubgramError as e:
        print(f"subgram: error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
