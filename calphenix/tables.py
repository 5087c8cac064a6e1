# tables.py
"""
calphenix tables

Description: Writers for the plain-text parameter tables read by the
  correction stage, and the CSV dump of the accepted calibration points.
  Tables are written once, from the driver process, after every unit of
  the table has finished.
"""

import logging
import os

import pandas as pd

from calphenix.results import points_frame

logger = logging.getLogger(__name__)


def format_value(value):
    """Integers as they are, floats with 10 significant digits."""
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        return str(value)
    return f"{float(value):.10g}"


class ParameterTable:
    """
    A header line followed by one whitespace separated row per bin
    combination, in the order the rows were given.
    """

    def __init__(self, filename, header, rows):
        self.filename = filename
        self.header = list(header)
        self.rows = [list(row) for row in rows]

    def lines(self):
        yield " ".join(format_value(value) for value in self.header)
        for row in self.rows:
            yield " ".join(format_value(value) for value in row)

    def write(self, output_dir):
        os.makedirs(output_dir, exist_ok=True)
        path = os.path.join(output_dir, self.filename)
        with open(path, "w") as table_file:
            for line in self.lines():
                table_file.write(line + "\n")
        logger.info(f"Parameters were written in the output file: {path}")
        return path


def read_table(path):
    """Reads a table back as (header, rows) of floats."""
    with open(path) as table_file:
        lines = [line.split() for line in table_file if line.strip()]
    header = [float(value) for value in lines[0]]
    rows = [[float(value) for value in line] for line in lines[1:]]
    return header, rows


def write_points_csv(output_dir, table_name, results):
    """Accepted points of every result, tagged with their combination fields."""
    frames = []
    for result in results:
        frame = points_frame(result.points)
        if frame.empty:
            continue
        for key, value in reversed(result.combination.fields):
            frame.insert(0, key, value)
        frames.append(frame)
    if not frames:
        return None

    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, f"points_{table_name}.csv")
    pd.concat(frames, ignore_index=True).to_csv(path, index=False)
    return path
