"""
Multi-shape RANSAC driver.

Efficient RANSAC in the style of Schnabel, Wahl and Klein (2007). Each round
draws minimal samples from octree cells, generates candidate shapes, scores
them and keeps the best. The round ends once enough candidates were tried
that a better shape is unlikely to have been missed. The best shape is then
accepted, its inliers are removed from the octree and the next round starts.
Detection stops when a round's best shape is too small.

Trials inside a round only read the octree and are evaluated in batches,
optionally on a thread pool. Each trial has its own random generator seeded
from the detector's generator, and results are reduced in trial order, so the
outcome does not depend on the number of workers.
"""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from .config import DetectorConfig
from .octree import Octree
from .point_store import PointVectorNN
from .ransac_core import ShapeFamily, create_family
from .scoring import CandidateScorer

logger = logging.getLogger(__name__)


class DetectorState(Enum):
    SAMPLING = 'sampling'
    GENERATING = 'generating'
    SCORING = 'scoring'
    ACCEPTING = 'accepting'
    CONTINUING = 'continuing'
    TERMINATED = 'terminated'


@dataclass
class Candidate:
    """A scored candidate shape."""
    which_shape: int
    model: np.ndarray
    sample: np.ndarray
    level: int
    node: int
    inliers: np.ndarray
    score: int


@dataclass
class FoundShape:
    """
    A detected shape.

    Attributes:
        model_param: Model coefficients, layout depends on the family
        which_shape: Index of the family in the configured family list
        family: Name of the family
        indices: Store indices of the points which matched the shape
        points: Points which matched the shape
    """
    model_param: np.ndarray
    which_shape: int
    family: str
    indices: np.ndarray
    points: List[PointVectorNN] = field(default_factory=list)

    @property
    def inlier_count(self) -> int:
        return len(self.indices)


@dataclass
class RoundContext:
    """State of one detection round."""
    required_trials: int
    best: Optional[Candidate] = None
    trials: int = 0
    attempts: int = 0

    def offer(self, candidate: Candidate) -> bool:
        """Keep the candidate if it beats the current best. Ties go to the higher priority family."""
        if self.best is None or candidate.score > self.best.score or (
                candidate.score == self.best.score
                and candidate.which_shape < self.best.which_shape):
            self.best = candidate
            return True
        return False


class LevelStatistics:
    """
    Octree depth preferences for sampling.

    The probability of sampling at depth l is

        P_l = x * (s_l / c_l) / sum_i(s_i / c_i) + (1 - x) / d

    where s_l is the summed score and c_l the number of candidates generated
    at depth l, and d the number of depths. Depths without candidates keep
    the uniform share only.
    """

    def __init__(self, depth: int, mix: float = 0.9):
        self.mix = mix
        self.score_sum = np.zeros(depth + 1)
        self.candidates = np.zeros(depth + 1)

    def record(self, level: int, score: int):
        self.score_sum[level] += score
        self.candidates[level] += 1

    def weights(self) -> np.ndarray:
        n_levels = len(self.score_sum)
        uniform = np.full(n_levels, 1.0 / n_levels)
        average = np.divide(
            self.score_sum, self.candidates,
            out=np.zeros(n_levels), where=self.candidates > 0
        )
        total = average.sum()
        if not total > 0:
            return uniform
        return self.mix * average / total + (1.0 - self.mix) * uniform


@dataclass
class TrialOutcome:
    level: int = -1
    candidate: Optional[Candidate] = None


class ShapeDetector:
    """
    Finds shapes in an octree until no shape with enough support remains.
    """

    def __init__(self, octree: Octree, config: DetectorConfig):
        """
        Initialize detector.

        Args:
            octree: Octree over the points. Accepted inliers are removed from it.
            config: Detector configuration
        """
        self.octree = octree
        self.store = octree.store
        self.config = config
        self.families: List[ShapeFamily] = [create_family(f) for f in config.families]
        self.scorer = CandidateScorer(octree, connectivity=config.connectivity)
        self.levels = LevelStatistics(octree.depth)
        self.rng = np.random.default_rng(config.random_seed)
        self.state = DetectorState.SAMPLING
        self.found: List[FoundShape] = []
        self._smallest_sample = min(f.min_samples() for f in self.families)
        self._executor: Optional[ThreadPoolExecutor] = None

    def required_trials(self, best: Optional[Candidate], surviving: int) -> int:
        """
        Number of candidates needed before the round can stop.

        With w the fraction of surviving points explained by the best
        candidate and m its minimal sample size, a round stops after
        log(1 - p) / log(1 - w^m) candidates, clamped to
        [min_trials, max_trials].
        """
        config = self.config
        if best is None or surviving <= 0:
            return config.max_trials

        w = min(best.score / surviving, 1.0)
        p_good = w ** self.families[best.which_shape].min_samples()
        if p_good >= 1.0:
            return config.min_trials
        if p_good <= 0.0:
            return config.max_trials

        needed = math.log(1.0 - config.target_probability) / math.log1p(-p_good)
        needed = int(math.ceil(needed)) if math.isfinite(needed) else config.max_trials
        return max(config.min_trials, min(config.max_trials, needed))

    def process(self, cancel: Optional[threading.Event] = None) -> List[FoundShape]:
        """
        Run detection until no further shape can be accepted.

        Args:
            cancel: Set from another thread to stop early. The round in
                progress stops at its next batch boundary and its best
                candidate is still considered for acceptance.

        Returns:
            Shapes in the order they were accepted
        """
        self.found = []
        minimum_needed = max(self._smallest_sample, self.config.min_model_accept)

        if self.config.workers > 1:
            self._executor = ThreadPoolExecutor(max_workers=self.config.workers)
        try:
            while True:
                if self.octree.alive_count < minimum_needed:
                    logger.debug('%d points left, stopping', self.octree.alive_count)
                    break
                if self.config.max_shapes is not None and len(self.found) >= self.config.max_shapes:
                    break

                self.state = DetectorState.SAMPLING
                context, cancelled = self._run_round(cancel)

                self.state = DetectorState.ACCEPTING
                shape = self._accept(context) if context.best is not None else None
                if shape is None:
                    logger.debug(
                        'No shape with %d inliers after %d trials, stopping',
                        self.config.min_model_accept, context.trials
                    )
                    break
                if cancelled:
                    logger.info('Detection cancelled')
                    break
        finally:
            if self._executor is not None:
                self._executor.shutdown()
                self._executor = None

        self.state = DetectorState.TERMINATED
        logger.info(
            'Detected %d shapes, %d of %d points unmatched',
            len(self.found), self.octree.alive_count, len(self.store)
        )
        return self.found

    def _run_round(self, cancel: Optional[threading.Event]) -> Tuple[RoundContext, bool]:
        config = self.config
        surviving = self.octree.alive_count
        context = RoundContext(required_trials=config.max_trials)
        max_attempts = config.max_attempts_factor * config.max_trials

        while context.trials < context.required_trials and context.attempts < max_attempts:
            if cancel is not None and cancel.is_set():
                return context, True

            self.state = DetectorState.SAMPLING
            batch = min(config.batch_size, max_attempts - context.attempts)
            seeds = self.rng.integers(0, np.iinfo(np.int64).max, size=batch)
            weights = self.levels.weights()

            self.state = DetectorState.GENERATING
            outcomes = self._evaluate(seeds, weights)

            # Reduction, in trial order
            self.state = DetectorState.SCORING
            for outcome in outcomes:
                context.attempts += 1
                candidate = outcome.candidate
                if candidate is None:
                    continue
                context.trials += 1
                self.levels.record(outcome.level, candidate.score)
                context.offer(candidate)
                context.required_trials = self.required_trials(context.best, surviving)
                if context.trials >= context.required_trials:
                    break
            self.state = DetectorState.CONTINUING

        logger.debug(
            'Round finished: %d trials, %d attempts, best score %d',
            context.trials, context.attempts,
            0 if context.best is None else context.best.score
        )
        return context, cancel is not None and cancel.is_set()

    def _evaluate(self, seeds: np.ndarray, weights: np.ndarray) -> List[TrialOutcome]:
        if self._executor is None:
            return [self._run_trial(seed, weights) for seed in seeds]
        return list(self._executor.map(lambda seed: self._run_trial(seed, weights), seeds))

    def _run_trial(self, seed, weights: np.ndarray) -> TrialOutcome:
        """Sample, generate and score one candidate. Reads the octree only."""
        rng = np.random.default_rng(int(seed))

        cell = self.octree.sample_cell(rng, weights, self._smallest_sample)
        if cell is None:
            return TrialOutcome()
        handle, level, seed_index = cell
        cell_points = self.octree.node_points(handle)

        eligible = [i for i, f in enumerate(self.families) if f.min_samples() <= len(cell_points)]
        which = eligible[int(rng.integers(len(eligible)))]
        family = self.families[which]

        others = cell_points[cell_points != seed_index]
        chosen = rng.choice(others, size=family.min_samples() - 1, replace=False)
        sample = np.concatenate([[seed_index], chosen]).astype(np.int64)

        model = family.generate(self.store.points[sample], self.store.normals[sample])
        if model is None:
            return TrialOutcome(level=level)

        result = self.scorer.score(family, model)
        return TrialOutcome(level=level, candidate=Candidate(
            which_shape=which,
            model=model,
            sample=sample,
            level=level,
            node=handle,
            inliers=result.indices,
            score=result.score
        ))

    def _accept(self, context: RoundContext) -> Optional[FoundShape]:
        """Refine the round's best candidate and accept it if it has enough support."""
        best = context.best
        family = self.families[best.which_shape]
        model, inliers = best.model, best.inliers

        refined = family.refine(self.store.points[inliers], self.store.normals[inliers])
        if refined is not None:
            result = self.scorer.score(family, refined)
            # Only keep the refit when it explains at least as many points
            if result.score >= best.score:
                model, inliers = refined, result.indices

        if len(inliers) < self.config.min_model_accept:
            return None

        self.octree.remove(inliers)
        shape = FoundShape(
            model_param=model,
            which_shape=best.which_shape,
            family=family.name,
            indices=inliers,
            points=self.store.get_vectors(inliers)
        )
        self.found.append(shape)

        logger.info(
            'Shape %d: %s, inliers=%d, trials=%d, %d points left',
            len(self.found), family.describe(model), len(inliers),
            context.trials, self.octree.alive_count
        )
        return shape
