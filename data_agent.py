import re
import pandas as pd
from pathlib import Path
from typing import Dict, Any, List, Optional, Sequence
from datetime import datetime

from schema import (
    AttributeTable,
    ConfigurationError,
    ConstraintSpec,
    FilterSpec,
    GroupSpec,
)
from utils import ProductionLogger, merge_section


# Two-character operators first so "X<=3" is not read as "X<" "=3".
FILTER_PATTERN = re.compile(r"^\s*(?P<attr>.+?)\s*(?P<op><=|>=|<|>|=)\s*(?P<thresh>.+?)\s*$")


def parse_filter(raw: str) -> FilterSpec:
    match = FILTER_PATTERN.match(raw)
    if not match:
        raise ConfigurationError(f"No operator found in filter '{raw}'")
    try:
        threshold = float(match.group("thresh"))
    except ValueError:
        raise ConfigurationError(f"Invalid threshold in filter '{raw}'") from None
    return FilterSpec(match.group("attr"), match.group("op"), threshold)


class DataAgent:
    """
    DataAgent: definition loading and selection export

    Responsibilities:
    - Load the item attribute table
    - Load base-set (group) definitions
    - Load statistical test definitions
    - Write one CSV per selected group
    """

    DEFAULT_CONFIG = {
        "items_csv": None,
        "basesets_csv": None,
        "testdefs_csv": None,
        "output_dir": "outputs",
        "delimiter": ";",
        "id_column": "File_Name",
    }

    def __init__(self, config: Dict[str, Any], logger: Optional[ProductionLogger] = None):
        self.config = merge_section(config, "data", DataAgent.DEFAULT_CONFIG)
        self.logger = logger
        self.delimiter = self.config["delimiter"]

    # ======================================================================
    # ITEM TABLE
    # ======================================================================
    def load_items(self, csv_path: str) -> AttributeTable:
        path = self._require(csv_path)
        df = pd.read_csv(path, sep=self.delimiter, skipinitialspace=True)
        df = df.loc[:, [c for c in df.columns if not str(c).startswith("Unnamed")]]
        df.columns = [str(c).strip() for c in df.columns]

        id_column = self.config["id_column"]
        if id_column not in df.columns:
            id_column = df.columns[0]

        table = AttributeTable.from_dataframe(df, id_column=id_column)

        if self.logger:
            self.logger.log_input_summary("LOAD_ITEMS", {
                "path": str(path),
                "items": len(table),
                "attributes": table.names,
            })
        return table

    # ======================================================================
    # BASE SETS
    # ======================================================================
    def load_group_specs(self, csv_path: str) -> List[GroupSpec]:
        """Group_Label;Required_N;Filter_1;Filter_2;... (rows may be ragged)."""
        path = self._require(csv_path)
        lines = path.read_text(encoding="utf-8-sig").splitlines()[1:]

        specs = []
        for line_no, line in enumerate(lines, start=2):
            if not line.strip():
                continue
            parts = [p.strip() for p in line.split(self.delimiter)]
            if len(parts) < 2 or not parts[0]:
                raise ConfigurationError(f"{path.name}:{line_no}: expected label and required N")
            try:
                required_n = int(float(parts[1]))
            except ValueError:
                raise ConfigurationError(f"{path.name}:{line_no}: invalid required N '{parts[1]}'") from None

            filters = [parse_filter(raw) for raw in parts[2:] if raw]
            specs.append(GroupSpec(label=parts[0], required_n=required_n, filters=filters))

        labels = [s.label for s in specs]
        duplicates = sorted({l for l in labels if labels.count(l) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate group labels: {duplicates}")

        if self.logger:
            self.logger.log_input_summary("LOAD_BASESETS", {
                "path": str(path),
                "groups": [
                    {"label": s.label, "required_n": s.required_n,
                     "filters": [f.describe() for f in s.filters]}
                    for s in specs
                ],
            })
        return specs

    # ======================================================================
    # TEST DEFINITIONS
    # ======================================================================
    def load_constraint_specs(self, csv_path: str) -> List[ConstraintSpec]:
        """Type;Variable;Groups;Operator;Threshold with comma-separated groups."""
        path = self._require(csv_path)
        df = pd.read_csv(
            path,
            sep=self.delimiter,
            skipinitialspace=True,
            dtype=str,
            keep_default_na=False,
        )
        if df.shape[1] < 5:
            raise ConfigurationError(
                f"{path.name}: expected 5 columns (type, variable, groups, operator, threshold)"
            )

        specs = []
        for row in df.iloc[:, :5].itertuples(index=False):
            test_type, attribute, groups, op, thresh = (str(v).strip() for v in row)
            if not test_type:
                continue
            try:
                threshold = float(thresh)
            except ValueError:
                raise ConfigurationError(f"Invalid p-value threshold '{thresh}'") from None
            specs.append(
                ConstraintSpec(
                    test_type=test_type,
                    attribute=attribute,
                    groups=[g for g in groups.split(",") if g.strip()],
                    operator=op,
                    threshold=threshold,
                )
            )

        if self.logger:
            self.logger.log_input_summary("LOAD_TESTDEFS", {"path": str(path), "tests": len(specs)})
        return specs

    # ======================================================================
    # EXPORT
    # ======================================================================
    def save_selection(
        self,
        table: AttributeTable,
        selection: Dict[str, Sequence[int]],
        output_dir: str,
        stamp: Optional[str] = None,
    ) -> List[Path]:
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        stamp = stamp or datetime.now().strftime("%y%m%d_%H%M")

        written = [
            self._write_rows(table, indices, out / f"{label}_{stamp}.csv")
            for label, indices in selection.items()
        ]

        if self.logger:
            self.logger.log_output_summary("SAVE_SELECTION", {"files": [str(p) for p in written]})
        return written

    def save_item_table(
        self,
        table: AttributeTable,
        output_dir: str,
        stamp: Optional[str] = None,
    ) -> Path:
        """Every item with all attributes, as ImagesData_<stamp>.csv."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        stamp = stamp or datetime.now().strftime("%y%m%d_%H%M")

        path = self._write_rows(table, range(len(table)), out / f"ImagesData_{stamp}.csv")

        if self.logger:
            self.logger.log_output_summary("SAVE_ITEM_TABLE", {"file": str(path), "items": len(table)})
        return path

    # ======================================================================
    # HELPERS
    # ======================================================================
    def _write_rows(self, table: AttributeTable, indices: Sequence[int], path: Path) -> Path:
        frame = table.rows(indices).rename(columns={"item_id": self.config["id_column"]})
        frame.to_csv(path, sep=self.delimiter, index=False, float_format="%f")
        return path

    def _require(self, csv_path: Optional[str]) -> Path:
        if not csv_path:
            raise ValueError("No CSV path provided")
        path = Path(csv_path)
        if not path.exists():
            raise FileNotFoundError(f"CSV file not found: {csv_path}")
        return path
