"""Output dataset: one CSV row per isolated inlining decision.

Columns fall into four categories, recorded in a ``.schema.json`` file
next to the CSV:

- ``meta``: identity of the decision plus ``Confidence`` and ``Status``
- ``input``: features the JIT observed at the call site (passed through)
- ``estimate``: the JIT's own model estimates (passed through)
- ``output``: measured deltas

Rows are only ever appended.
"""

import csv
import json
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .estimator import MISSING, DeltaEstimate
from .forest import InlineDecision, MethodId

META_COLUMNS = [
    "Benchmark", "Method", "Decision", "Callee", "TreeDepth", "Reason",
    "Confidence", "Status",
]

# Observations reported by the JIT's discretionary policy
INPUT_COLUMNS = [
    "ILSize", "CallsiteFrequency", "InstructionCount", "LoadStoreCount",
    "Depth", "BlockCount", "Maxstack", "ArgCount",
    "ArgType0", "ArgType1", "ArgType2", "ArgType3", "ArgType4", "ArgType5",
    "ArgSize0", "ArgSize1", "ArgSize2", "ArgSize3", "ArgSize4", "ArgSize5",
    "LocalCount", "ReturnType", "ReturnSize", "ArgAccessCount",
    "LocalAccessCount", "IntConstantCount", "FloatConstantCount",
    "IntLoadCount", "FloatLoadCount", "IntStoreCount", "FloatStoreCount",
    "SimpleMathCount", "ComplexMathCount", "OverflowMathCount",
    "IntArrayLoadCount", "FloatArrayLoadCount", "RefArrayLoadCount",
    "StructArrayLoadCount", "IntArrayStoreCount", "FloatArrayStoreCount",
    "RefArrayStoreCount", "StructArrayStoreCount", "StructOperationCount",
    "ObjectModelCount", "FieldLoadCount", "FieldStoreCount",
    "StaticFieldLoadCount", "StaticFieldStoreCount", "LoadAddressCount",
    "ThrowCount", "ReturnCount", "CallCount", "CallSiteWeight",
    "IsForceInline", "IsInstanceCtor", "IsFromPromotableValueClass",
    "HasSimd", "LooksLikeWrapperMethod", "ArgFeedsConstantTest",
    "IsMostlyLoadStore", "ArgFeedsRangeCheck", "ConstantArgFeedsConstantTest",
    "CalleeNativeSizeEstimate", "CallsiteNativeSizeEstimate",
]

ESTIMATE_COLUMNS = ["ModelCodeSizeEstimate", "ModelPerCallInstructionEstimate"]

OUTPUT_COLUMNS = [
    "InstRetiredDelta", "InstRetiredSD", "CallDelta", "InstRetiredPerCallDelta",
    "RootCallCount", "InstRetiredPerRootCallDelta",
]


@dataclass
class InlineDataRow:
    """A measured (or failed) decision. ``estimate`` is None when data is missing."""

    benchmark: str
    root: MethodId
    decision: InlineDecision
    estimate: Optional[DeltaEstimate] = None

    @property
    def status(self) -> str:
        return self.estimate.status if self.estimate is not None else MISSING

    def to_record(self, input_columns: Sequence[str], estimate_columns: Sequence[str]) -> Dict[str, object]:
        d = self.decision
        # Feature bag first; meta and output columns overwrite it
        record = {k: v for k, v in d.attributes.items() if k in input_columns or k in estimate_columns}
        record.update({
            "Benchmark": self.benchmark,
            "Method": str(self.root),
            "Decision": str(d),
            "Callee": str(d.callee),
            "TreeDepth": d.depth,
            "Reason": d.reason,
        })

        e = self.estimate
        record["Status"] = self.status
        record["Confidence"] = _cell(e.confidence if e else None)
        record["InstRetiredDelta"] = _cell(e.inst_retired_delta if e else None)
        record["InstRetiredSD"] = _cell(e.inst_retired_sd if e else None)
        record["CallDelta"] = e.call_delta if e and e.inst_retired_delta is not None else ""
        record["InstRetiredPerCallDelta"] = _cell(e.per_call_delta if e else None)
        record["RootCallCount"] = e.root_call_count if e else ""
        record["InstRetiredPerRootCallDelta"] = _cell(e.per_root_call_delta if e else None)
        return record


def _cell(value):
    if value is None:
        return ""
    return round(value, 6) if isinstance(value, float) else value


class DatasetWriter:
    """Appends rows to a CSV dataset, writing the header once."""

    def __init__(self, path: str, input_columns: Sequence[str] = None,
                 estimate_columns: Sequence[str] = None):
        self.path = path
        self.input_columns = list(input_columns if input_columns is not None else INPUT_COLUMNS)
        self.estimate_columns = list(estimate_columns if estimate_columns is not None else ESTIMATE_COLUMNS)
        self.rows_written = 0
        self._file = None
        self._writer = None

    @property
    def columns(self) -> List[str]:
        seen = set()
        columns = []
        for name in META_COLUMNS + self.input_columns + self.estimate_columns + OUTPUT_COLUMNS:
            if name not in seen:
                seen.add(name)
                columns.append(name)
        return columns

    def schema(self) -> Dict[str, str]:
        categories = {}
        for category, names in (("output", OUTPUT_COLUMNS),
                                ("estimate", self.estimate_columns),
                                ("input", self.input_columns),
                                ("meta", META_COLUMNS)):
            for name in names:
                categories[name] = category
        return {name: categories[name] for name in self.columns}

    def open(self):
        if self._file is not None:
            return self
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        new_file = not os.path.exists(self.path) or os.path.getsize(self.path) == 0
        self._file = open(self.path, "a", newline="")
        self._writer = csv.DictWriter(self._file, fieldnames=self.columns, extrasaction="ignore")
        if new_file:
            self._writer.writeheader()
            self._file.flush()
        with open(os.path.splitext(self.path)[0] + ".schema.json", "w") as f:
            json.dump(self.schema(), f, indent=2)
        return self

    def append(self, row: InlineDataRow):
        if self._file is None:
            self.open()
        self._writer.writerow(row.to_record(self.input_columns, self.estimate_columns))
        self._file.flush()
        self.rows_written += 1

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None
            self._writer = None

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()


def read_dataset(path: str) -> List[Dict[str, str]]:
    with open(path, newline="") as f:
        return list(csv.DictReader(f))
