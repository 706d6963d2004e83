#Code by Christopher Kaelin, 2025
# This code is licensed under the MIT License - see the LICENSE file for details.
'''
Command line driver.

    python -m bovw evaluate --train setup/Words05.json setup/Words10.json --test setup/Test.json
    python -m bovw localize --setup setup/Words10.json --image field.jpg --step 32

evaluate trains one database per train setup, checks it against itself and against the shared test database,
and writes one summary row per train setup. localize trains a database and writes the vote overlay for one image.
'''
import argparse
import logging
import sys
from pathlib import Path

import cv2

from bovw.database import RecognitionDatabase
from bovw.errors import RecognitionError
from bovw.evaluation import summary_row, timing_row, write_summary, write_timing_summary
from bovw.voter import localize_image

logger = logging.getLogger(__name__)


def train_database(setup, color=False):
    """Run every stage for one setup file. Raises RecognitionError naming the first stage that failed."""
    db = RecognitionDatabase.from_file(setup)
    stages = [("features", db.populate_features),
              ("dictionary", db.populate_vocabulary),
              ("word classifier", lambda: db.train_classifier("words"))]
    if color:
        stages += [("colour histograms", db.populate_color_histograms),
                   ("colour classifier", lambda: db.train_classifier("color"))]
    for stage, run in stages:
        outcome = run()
        if not outcome:
            raise RecognitionError(f"{db.name}: {stage} failed: {outcome.message}")
    return db


def evaluate(args):
    test_db = RecognitionDatabase.from_file(args.test)
    outcome = test_db.populate_features()
    if not outcome:
        raise RecognitionError(f"{test_db.name}: features failed: {outcome.message}")
    if args.color:
        outcome = test_db.populate_color_histograms()
        if not outcome:
            raise RecognitionError(f"{test_db.name}: colour histograms failed: {outcome.message}")

    classes = test_db.labels.names
    rows, color_rows, timings = [], [], []
    for setup in args.train:
        print(f"DATABASE: {setup} Started")
        train_db = train_database(setup, color=args.color)

        own = train_db.classify_against(train_db)
        print(f"    Self classification: {own.total_matches}/{own.total} ({100 * own.accuracy():0.2f} %)")

        tally = train_db.classify_against(test_db)
        print(f"    Test classification: {tally.total_matches}/{tally.total} ({100 * tally.accuracy():0.2f} %)")
        rows.append(summary_row(train_db.name, tally, classes))

        if args.color:
            color_tally = train_db.classify_against(test_db, input="color")
            color_rows.append(summary_row(train_db.name, color_tally, classes))

        timings.append(timing_row(test_db.name, train_db.name, train_db.timings,
                                  len(train_db.entries), len(test_db.entries)))

    write_summary(args.summary, rows, classes)
    if color_rows:
        summary = Path(args.summary)
        write_summary(summary.with_name(summary.stem + ".Color" + summary.suffix), color_rows, classes)
    if args.timing:
        write_timing_summary(args.timing, timings)
    print(f"Summary written to {args.summary}")


def localize(args):
    db = train_database(args.setup)
    winners, image, votes = localize_image(db, args.image, args.step)
    output = args.output or str(Path(args.image).with_suffix("")) + ".votes.jpg"
    if not cv2.imwrite(output, image):
        raise RecognitionError(f"could not write {output}")
    print(f"Voted on {votes.evaluated} grid points ({votes.skipped} skipped), overlay written to {output}")


def build_parser():
    parser = argparse.ArgumentParser(prog="bovw", description="Bag of visual words recognition")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("evaluate", help="Train databases and verify each one on a test database")
    p.add_argument("--train", nargs="+", required=True, help="Train setup files (JSON)")
    p.add_argument("--test", required=True, help="Test setup file (JSON)")
    p.add_argument("--summary", default="WordTest.Verify.csv", help="Per-class accuracy summary (CSV)")
    p.add_argument("--timing", default=None, help="Optional stage timing summary (CSV)")
    p.add_argument("--color", action="store_true", help="Also train and verify the colour classifier")
    p.set_defaults(func=evaluate)

    p = sub.add_parser("localize", help="Sliding-window vote over one image")
    p.add_argument("--setup", required=True, help="Train setup file (JSON)")
    p.add_argument("--image", required=True, help="Image to localise")
    p.add_argument("--step", type=int, default=32, help="Grid spacing in pixels")
    p.add_argument("--output", default=None, help="Overlay image path")
    p.set_defaults(func=localize)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        args.func(args)
    except RecognitionError as e:
        print(f"An error occurred: {e}", file=sys.stderr)
        sys.exit(1)
    print("Pipeline completed successfully!")


if __name__ == "__main__":
    # Ensures the script runs only when executed directly
    main()
