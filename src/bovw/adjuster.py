#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Detector threshold adjuster.

Runs the detector repeatedly, nudging its sensitivity threshold until the number of keypoints lands
inside [target_min, target_max]. The step is proportional to the distance from the band midpoint and is
re-scaled after every iteration by how far the threshold actually moved. When two consecutive counts
straddle the band (too many -> too few, or the reverse) the threshold is bisected and the learning rate halved.

The threshold is an explicit input/output: callers that want to carry it over to the next image
read AdjusterResult.threshold and pass it back in.
'''
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class AdjusterResult:
    threshold: float
    keypoints: List
    hit_target: bool
    iterations: int


def in_band(count, target_min, target_max):
    return target_min <= count <= target_max


def adjust_threshold(detect: Callable[[float], List],
                     initial: float,
                     target_min: int,
                     target_max: int,
                     max_iterations: int,
                     learn_rate: float,
                     min_allowable: float,
                     max_allowable: float,
                     initial_step: Optional[float] = None) -> AdjusterResult:
    """
    Search for a threshold whose keypoint count falls inside [target_min, target_max].

    detect(threshold) must return the keypoints found at that threshold. A higher threshold is
    assumed to give fewer keypoints. initial_step is the threshold change per surplus keypoint used
    on the first iteration (defaults to learn_rate); later steps are derived from observed movement.

    A missed band is not an error: the keypoints from the last detector run are returned with hit_target=False.
    """
    mid = target_min + (target_max - target_min) // 2
    alpha = learn_rate if initial_step is None else initial_step

    threshold = float(initial)
    previous_threshold = threshold
    previous_count = 0
    keypoints = []
    hit = False
    iterations = 0

    for i in range(max_iterations):
        iterations = i + 1
        keypoints = detect(threshold)
        count = len(keypoints)

        if in_band(count, target_min, target_max):
            hit = True
            break

        if i > 0 and count < target_min and previous_count > target_max:
            # Overshot from too many to too few points: bisect back towards the previous threshold
            last = previous_threshold
            previous_threshold = threshold
            threshold = threshold - (threshold - last) / 2
            learn_rate = learn_rate / 2.0
        elif i > 0 and count > target_max and previous_count < target_min:
            # Overshot from too few to too many points
            last = previous_threshold
            previous_threshold = threshold
            threshold = threshold + (last - threshold) / 2
            learn_rate = learn_rate / 2.0
        else:
            moved = threshold - previous_threshold
            if i > 0 and moved != 0:
                alpha = abs(learn_rate / moved)
            previous_threshold = threshold
            threshold = threshold + alpha * (count - mid)
            threshold = min(max(threshold, min_allowable), max_allowable)

        previous_count = count

    if not hit:
        logger.debug("Threshold search missed [%d, %d] after %d iterations (last count %d, threshold %.4f)",
                     target_min, target_max, iterations, len(keypoints), threshold)

    return AdjusterResult(threshold=threshold, keypoints=keypoints, hit_target=hit, iterations=iterations)
