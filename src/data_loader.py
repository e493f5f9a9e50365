#!/usr/bin/env python3
"""
Nutrient Data Loader
Reads the TN sample table (CSV) and the station display-name table (spreadsheet)
with schema validation and comprehensive error handling.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

MONTH_LABELS = [
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
]

SPREADSHEET_SUFFIXES = {".xlsx", ".xlsm", ".xls"}


class DataLoadError(Exception):
    """Base exception for input loading errors."""

    pass


class DataFileNotFoundError(DataLoadError, FileNotFoundError):
    """Raised when an input file does not exist."""

    pass


class FileAccessError(DataLoadError):
    """Raised when file cannot be accessed or read."""

    pass


class SchemaMismatchError(DataLoadError):
    """Raised when a required column is absent from an input table."""

    pass


class InvalidDateError(DataLoadError):
    """Raised when sample dates cannot be parsed."""

    pass


def month_dtype() -> pd.CategoricalDtype:
    """Ordered Jan..Dec categorical used for every month column."""
    return pd.CategoricalDtype(categories=MONTH_LABELS, ordered=True)


def _require_columns(df: pd.DataFrame, required: Iterable[str], label: str) -> None:
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise SchemaMismatchError(
            f"{label} is missing required columns: {', '.join(missing)}. "
            f"Found columns: {list(df.columns)}"
        )


class NutrientDataLoader:
    """
    Loads the sample table and the station-name table for a TN trend run.

    Both paths are validated on construction so that a missing input fails
    before any parsing work starts.
    """

    def __init__(
        self,
        samples_path: Union[str, Path],
        names_path: Union[str, Path],
    ) -> None:
        """
        Args:
            samples_path: Path to the nutrient sample CSV
            names_path: Path to the station-name spreadsheet (.xlsx) or CSV

        Raises:
            DataFileNotFoundError: If either file does not exist
            FileAccessError: If either path is not a regular file
        """
        self.samples_path = Path(samples_path)
        self.names_path = Path(names_path)
        for p in (self.samples_path, self.names_path):
            if not p.exists():
                raise DataFileNotFoundError(f"Input file not found: {p}")
            if not p.is_file():
                raise FileAccessError(f"Path is not a file: {p}")
        if self.samples_path.suffix.lower() != ".csv":
            logger.warning(
                f"Sample file does not have .csv extension: {self.samples_path}"
            )

    def read_samples(
        self,
        station_column: str = "station",
        date_column: str = "date",
        tn_column: str = "tn",
        date_format: Optional[str] = None,
        fail_on_invalid_dates: bool = True,
    ) -> pd.DataFrame:
        """
        Read the sample CSV and derive calendar fields.

        The station column is read as string so identifiers with leading zeros
        survive. Rows without a station id are dropped. Adds ``year`` (int)
        and ``month`` (ordered Jan..Dec categorical).

        Raises:
            FileAccessError: If the CSV cannot be parsed
            SchemaMismatchError: If station/date/TN columns are absent
            InvalidDateError: If dates fail to parse and fail_on_invalid_dates is set
        """
        try:
            df = pd.read_csv(self.samples_path, dtype={station_column: str})
        except pd.errors.EmptyDataError:
            raise SchemaMismatchError(f"Sample file is empty: {self.samples_path}")
        except Exception as e:
            raise FileAccessError(f"Error reading sample CSV: {e}")

        _require_columns(df, [station_column, date_column, tn_column], "Sample table")

        df = df.loc[df[station_column].notna()].copy()
        df[station_column] = df[station_column].str.strip()

        df[tn_column] = pd.to_numeric(df[tn_column], errors="coerce")
        df[date_column] = pd.to_datetime(
            df[date_column], format=date_format, errors="coerce"
        )
        invalid_dates = int(df[date_column].isna().sum())
        if invalid_dates > 0:
            msg = (
                f"Found {invalid_dates} invalid dates in column '{date_column}' "
                f"out of {len(df)} rows"
            )
            if fail_on_invalid_dates:
                raise InvalidDateError(msg)
            logger.warning(msg + " - dropping them")
            df = df.loc[df[date_column].notna()]

        df = df.assign(
            year=df[date_column].dt.year.astype(int),
            month=pd.Categorical.from_codes(
                df[date_column].dt.month.to_numpy() - 1, dtype=month_dtype()
            ),
        )

        duplicated = int(df.duplicated(subset=[station_column, date_column]).sum())
        if duplicated:
            logger.warning(
                f"Found {duplicated} repeated station/date records in sample table"
            )
        df.attrs["duplicate_station_dates"] = duplicated

        return df.reset_index(drop=True)

    def read_station_names(
        self,
        station_column: str = "station",
        display_column: str = "alt_name",
        sheet_name: Union[str, int] = 0,
    ) -> pd.DataFrame:
        """
        Read the station display-name table.

        Returns a two-column frame (station_column, display_column), one row per
        station. Spreadsheets are read with the openpyxl engine; a ``.csv`` names
        file is also accepted.
        """
        try:
            if self.names_path.suffix.lower() in SPREADSHEET_SUFFIXES:
                df = pd.read_excel(
                    self.names_path,
                    sheet_name=sheet_name,
                    dtype={station_column: str},
                )
            else:
                df = pd.read_csv(self.names_path, dtype={station_column: str})
        except Exception as e:
            raise FileAccessError(f"Error reading station names: {e}")

        _require_columns(df, [station_column, display_column], "Station-name table")

        df = df[[station_column, display_column]].dropna(subset=[station_column])
        df[station_column] = df[station_column].astype(str).str.strip()
        n_dupes = int(df.duplicated(subset=[station_column]).sum())
        if n_dupes:
            logger.warning(
                f"Station-name table maps {n_dupes} stations more than once; keeping first"
            )
            df = df.drop_duplicates(subset=[station_column], keep="first")
        return df.reset_index(drop=True)

    def get_file_info(self) -> Dict[str, Any]:
        """
        Get summary information about both input files.

        Raises:
            FileAccessError: If the sample file cannot be read
        """
        try:
            sample_df = pd.read_csv(self.samples_path, nrows=5)
            total_rows = sum(
                len(chunk) for chunk in pd.read_csv(self.samples_path, chunksize=10000)
            )
        except Exception as e:
            raise FileAccessError(f"Error getting file info: {e}")

        return {
            "samples_path": str(self.samples_path),
            "samples_size": self.samples_path.stat().st_size,
            "samples_rows": total_rows,
            "samples_columns": list(sample_df.columns),
            "names_path": str(self.names_path),
            "names_size": self.names_path.stat().st_size,
        }

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        # No cleanup needed for this class
        pass
