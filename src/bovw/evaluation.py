#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Confusion tallies from cross-database classification and the CSV summaries built from them.
'''
import csv
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List

logger = logging.getLogger(__name__)


@dataclass
class ConfusionTally:
    """Per-class match and truth counts, keyed by label name, plus what each entry was classified as."""

    source: str = ""
    target: str = ""
    match_count: Dict[str, int] = field(default_factory=Counter)
    truth_count: Dict[str, int] = field(default_factory=Counter)
    entry_names: List[str] = field(default_factory=list)
    classified: List[str] = field(default_factory=list)
    truth: List[str] = field(default_factory=list)
    times: List[float] = field(default_factory=list)
    elapsed: float = 0.0

    def record(self, entry_name, truth, classified, seconds):
        self.entry_names.append(entry_name)
        self.truth.append(truth)
        self.classified.append(classified)
        self.times.append(seconds)
        if truth == classified:
            self.match_count[truth] += 1
        self.truth_count[truth] += 1

    @property
    def classes(self):
        return sorted(self.truth_count)

    @property
    def total_matches(self):
        return sum(self.match_count.values())

    @property
    def total(self):
        return sum(self.truth_count.values())

    def accuracy(self, label=None):
        """Fraction correct for one class, or over every entry when label is None."""
        if label is None:
            return self.total_matches / self.total if self.total else 0.0
        truth = self.truth_count.get(label, 0)
        return self.match_count.get(label, 0) / truth if truth else 0.0


def format_cell(matched, total):
    percent = 100.0 * matched / total if total else 0.0
    return f"{matched}/{total} ({percent:0.2f} %)"


def summary_row(name, tally, classes=None):
    """One summary row: name, one "matched/total (xx.xx %)" cell per class, then the total."""
    classes = tally.classes if classes is None else classes
    row = [name]
    for label in classes:
        row.append(format_cell(tally.match_count.get(label, 0), tally.truth_count.get(label, 0)))
    row.append(format_cell(tally.total_matches, tally.total))
    return row


def write_summary(path, rows, classes):
    """Write summary rows (from summary_row) under a "Name, <classes...>, Total" header."""
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["Name"] + list(classes) + ["Total"])
        writer.writerows(rows)
    logger.info("Wrote %d summary rows to %s", len(rows), path)


TIMING_HEADER = [
    "Test Database", "Train Database", "Features (ms)", "Dictionary (ms)", "Word Histograms (ms)",
    "Word Classifier Training (ms)", "Colour Histograms (ms)", "Colour Classifier Training (ms)",
    "Word Verification (ms)", "Colour Verification (ms)", "Train Entries", "Test Entries",
]


def timing_row(test_name, train_name, timings, train_entries, test_entries):
    """timings maps stage name -> seconds; missing stages are written as 0."""
    stages = ["features", "dictionary", "word_histograms", "word_classifier",
              "color_histograms", "color_classifier", "word_verify", "color_verify"]
    return [test_name, train_name] + [int(round(1000 * timings.get(s, 0.0))) for s in stages] + \
        [train_entries, test_entries]


def write_timing_summary(path, rows):
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(TIMING_HEADER)
        writer.writerows(rows)
