"""
Batch Processing Utility for Thigh CSA Analysis
================================================
Process multiple MRI slices from a manifest of operator-recorded seeds
and polygons, and export results to CSV/Excel.

Seeds and polygons are collected once, interactively, and stored in the
manifest so whole cohorts can be re-measured reproducibly.

Author: Thigh CSA Analyst Project
License: BSD 3-Clause
"""

import argparse
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd
from tqdm import tqdm

from thigh_analyzer import (
    MUSCLE_GROUPS,
    SIDES,
    SegmentationConfig,
    ThighAnalyzer,
    ThighSeeds,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

INFO_COLUMNS = ['Subj ID', 'Subj #', 'MRI Date', 'Analysis Date']
AREA_COLUMNS = [
    'L Mus CSA Ext', 'R Mus CSA Ext', 'L Mus CSA Flex', 'R Mus CSA Flex',
    'L Mus CSA total', 'R Mus CSA total', 'L SubFat CSA', 'R SubFat CSA',
    'L Non Con CSA', 'R Non Con CSA', 'L Bone CSA', 'R Bone CSA',
]

DEFAULT_SHEET = 'PTOA Study'


def _manifest_columns() -> List[str]:
    columns = ['subject_id', 'image_path']
    for side in SIDES:
        columns += [f'{side}_fat', f'{side}_bone', f'{side}_muscle']
        columns += [f'{side}_{group}' for group in MUSCLE_GROUPS]
    return columns


def parse_point(text: str) -> Tuple[float, float]:
    """Parse ``"a,b"`` into a pair of numbers."""
    parts = [p.strip() for p in str(text).split(',')]
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Expected a coordinate pair 'a,b', got {text!r}")
    return float(parts[0]), float(parts[1])


def parse_seed(text: str) -> Tuple[int, int]:
    """Parse a ``"row,col"`` seed."""
    row, col = parse_point(text)
    return int(round(row)), int(round(col))


def parse_seeds(text: str) -> Tuple[Tuple[int, int], ...]:
    """Parse ``"row,col;row,col"`` into a tuple of seeds."""
    return tuple(parse_seed(p) for p in str(text).split(';') if p.strip())


def parse_polygon(text: str) -> List[Tuple[float, float]]:
    """Parse ``"x,y;x,y;..."`` into polygon vertices."""
    return [parse_point(p) for p in str(text).split(';') if p.strip()]


class ManifestEntry:
    """Container for one image and the operator input recorded for it."""

    def __init__(self,
                 subject_id: str,
                 image_path: str,
                 seeds: Dict[str, ThighSeeds],
                 polygons: Dict[str, Dict[str, List[Tuple[float, float]]]],
                 **additional_fields):
        """Initialize a manifest entry.

        Args:
            subject_id: Subject identifier written to the results
            image_path: Path to the DICOM or image file
            seeds: ThighSeeds per side
            polygons: polygons[side][group] vertices in the thigh view
            **additional_fields: Any additional metadata to include
        """
        self.subject_id = subject_id
        self.image_path = image_path
        self.seeds = seeds
        self.polygons = polygons
        self.additional_fields = additional_fields


class BatchProcessor:
    """Process multiple MRI slices for thigh cross-sectional area analysis.

    Each image either yields one complete result row or an error row
    with no areas. Supports parallel processing and progress tracking.

    Example usage:
        processor = BatchProcessor()
        entries = processor.load_manifest("manifest.csv")
        results = processor.process_all(entries)
        processor.append_to_workbook(results, "Muscle CSA_Y1/mthresh.xlsx")
    """

    def __init__(self,
                 config: Optional[SegmentationConfig] = None,
                 save_visualizations: bool = False,
                 output_dir: Optional[str] = None,
                 sheet_name: str = DEFAULT_SHEET):
        """Initialize the batch processor.

        Args:
            config: Segmentation parameters (uses defaults if None)
            save_visualizations: Whether to save overlay and histogram images
            output_dir: Directory for saving visualizations
            sheet_name: Workbook sheet that results are appended to
        """
        self.config = config or SegmentationConfig()
        self.save_visualizations = save_visualizations
        self.output_dir = Path(output_dir) if output_dir else Path("./output")
        self.sheet_name = sheet_name

        if self.save_visualizations:
            self.output_dir.mkdir(parents=True, exist_ok=True)

    def load_manifest(self, csv_path: str) -> List[ManifestEntry]:
        """Load the per-image seeds and polygons from a CSV file.

        Seeds are ``"row,col"`` (muscle seeds separated by ``;``) in the
        cropped image; polygons are ``"x,y;x,y;..."`` in the thigh view.

        Args:
            csv_path: Path to the manifest CSV

        Returns:
            List of ManifestEntry objects

        Raises:
            ValueError: If a required column is missing or a cell is malformed
        """
        df = pd.read_csv(csv_path, dtype=str)

        required_columns = _manifest_columns()
        missing = [col for col in required_columns if col not in df.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        entries = []
        for _, row in df.iterrows():
            seeds = {
                side: ThighSeeds(
                    fat=parse_seed(row[f'{side}_fat']),
                    bone=parse_seed(row[f'{side}_bone']),
                    muscle=parse_seeds(row[f'{side}_muscle']),
                )
                for side in SIDES
            }
            polygons = {
                side: {
                    group: parse_polygon(row[f'{side}_{group}'])
                    for group in MUSCLE_GROUPS
                }
                for side in SIDES
            }
            additional = {
                k: v for k, v in row.items()
                if k not in required_columns
            }
            entries.append(ManifestEntry(
                subject_id=str(row['subject_id']),
                image_path=row['image_path'],
                seeds=seeds,
                polygons=polygons,
                **additional
            ))

        logger.info(f"Loaded {len(entries)} images from {csv_path}")
        return entries

    def process_single(self, entry: ManifestEntry) -> Dict:
        """Process a single image.

        Args:
            entry: ManifestEntry with the image path and operator input

        Returns:
            Dictionary with the subject ID, status and, on success, the
            complete result record
        """
        result = {
            'Subj ID': entry.subject_id,
            'status': 'success',
            'error': None
        }

        try:
            analyzer = ThighAnalyzer(entry.image_path, self.config,
                                     subject_id=entry.subject_id)
            analyzer.segment_thighs(entry.seeds)

            for side in SIDES:
                for group in MUSCLE_GROUPS:
                    roi = analyzer.roi(side, group)
                    roi.submit(entry.polygons[side][group])
                    roi.commit()

            analyzer.analyze()
            record = analyzer.get_results_dict()

            # Save visualization if requested
            if self.save_visualizations:
                viz_path = self.output_dir / f"{entry.subject_id}_thigh_csa.png"
                hist_path = self.output_dir / f"{entry.subject_id}_histogram.png"
                analyzer.save_visualization(str(viz_path))
                analyzer.save_histogram(str(hist_path))
                record['visualization_path'] = str(viz_path)

            result.update(record)
            result.update(entry.additional_fields)

            logger.info(f"Successfully processed {entry.subject_id}")

        except Exception as e:
            result['status'] = 'error'
            result['error'] = f"{type(e).__name__}: {e}"
            logger.error(f"Error processing {entry.subject_id}: {e}")

        return result

    def process_all(self,
                    entries: List[ManifestEntry],
                    parallel: bool = False,
                    max_workers: int = 4,
                    show_progress: bool = True) -> pd.DataFrame:
        """Process all images in the manifest.

        Args:
            entries: List of ManifestEntry objects
            parallel: Whether to use parallel processing
            max_workers: Number of parallel workers
            show_progress: Whether to show progress bar

        Returns:
            DataFrame with all analysis results
        """
        results = []

        if parallel:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = {
                    executor.submit(self.process_single, e): e
                    for e in entries
                }

                iterator = as_completed(futures)
                if show_progress:
                    iterator = tqdm(iterator, total=len(entries),
                                    desc="Processing images")

                for future in iterator:
                    results.append(future.result())
        else:
            iterator = entries
            if show_progress:
                iterator = tqdm(entries, desc="Processing images")

            for entry in iterator:
                results.append(self.process_single(entry))

        df = pd.DataFrame(results)

        # Reorder columns
        priority_cols = INFO_COLUMNS + AREA_COLUMNS + ['Units']
        existing_priority = [c for c in priority_cols if c in df.columns]
        other_cols = [c for c in df.columns if c not in priority_cols]
        df = df[existing_priority + other_cols]

        # Summary statistics
        success_count = (df['status'] == 'success').sum()
        error_count = (df['status'] == 'error').sum()
        logger.info(f"Batch processing complete: {success_count} successful, "
                    f"{error_count} errors")

        return df

    def export_results(self,
                       df: pd.DataFrame,
                       output_path: str,
                       format: str = 'csv') -> None:
        """Export results to file.

        Args:
            df: DataFrame with analysis results
            output_path: Path to save the results
            format: Output format ('csv' or 'excel')
        """
        if format == 'csv':
            df.to_csv(output_path, index=False)
        elif format == 'excel':
            df.to_excel(output_path, index=False, engine='openpyxl')
        else:
            raise ValueError(f"Unsupported format: {format}")

        logger.info(f"Results exported to {output_path}")

    def append_to_workbook(self,
                           df: pd.DataFrame,
                           output_path: str,
                           sheet_name: Optional[str] = None) -> None:
        """Append successful results as rows at the bottom of a workbook sheet.

        A missing workbook or sheet (or one without its two header rows)
        is created with a header row and a units row first. Rows are
        written in the column order of the existing header.

        Args:
            df: DataFrame with analysis results
            output_path: Path to the .xlsx workbook
            sheet_name: Sheet to append to (defaults to the processor's)
        """
        sheet_name = sheet_name or self.sheet_name
        path = Path(output_path)
        rows = df[df['status'] == 'success'] if 'status' in df.columns else df
        rows = rows.drop(columns=['status', 'error'], errors='ignore')

        header: Optional[List[str]] = None
        start_row = 0
        if path.exists():
            with pd.ExcelFile(path, engine='openpyxl') as workbook:
                sheet_exists = sheet_name in workbook.sheet_names
            if sheet_exists:
                existing = pd.read_excel(path, sheet_name=sheet_name,
                                         header=None, engine='openpyxl')
                if len(existing) >= 2:
                    header = [str(c) for c in existing.iloc[0].tolist()]
                    start_row = len(existing)

        if header is None:
            table = pd.concat([self._units_row(rows), rows], ignore_index=True)
            write_header = True
        else:
            table = rows.reindex(columns=header)
            write_header = False

        if path.exists():
            writer = pd.ExcelWriter(path, engine='openpyxl', mode='a',
                                    if_sheet_exists='overlay')
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            writer = pd.ExcelWriter(path, engine='openpyxl', mode='w')

        with writer:
            table.to_excel(writer, sheet_name=sheet_name, startrow=start_row,
                           header=write_header, index=False)

        logger.info(f"Appended {len(rows)} rows to {path} [{sheet_name}]")

    @staticmethod
    def _units_row(rows: pd.DataFrame) -> pd.DataFrame:
        unit = rows['Units'].iloc[0] if 'Units' in rows and len(rows) else ''
        units = {
            col: (f"({unit})" if col in AREA_COLUMNS and unit else '')
            for col in rows.columns
        }
        return pd.DataFrame([units], columns=rows.columns)

    def generate_summary_report(self, df: pd.DataFrame) -> Dict:
        """Generate summary statistics from batch results.

        Args:
            df: DataFrame with analysis results

        Returns:
            Dictionary with summary statistics
        """
        successful = df[df['status'] == 'success']

        summary = {
            'total_images': len(df),
            'successful': len(successful),
            'errors': len(df) - len(successful),
            'statistics': {}
        }

        for col in AREA_COLUMNS:
            if col in successful.columns:
                values = pd.to_numeric(successful[col])
                summary['statistics'][col] = {
                    'mean': values.mean(),
                    'std': values.std(),
                    'min': values.min(),
                    'max': values.max(),
                    'median': values.median()
                }

        return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Measure thigh muscle, fat and noncontractile "
                    "cross-sectional areas for every image in a manifest."
    )
    parser.add_argument('manifest', help="CSV manifest of images, seeds and polygons")
    parser.add_argument('output', help="Output CSV or Excel file")
    parser.add_argument('--format', choices=['csv', 'excel', 'append'],
                        default='csv',
                        help="'append' adds rows to an existing workbook sheet")
    parser.add_argument('--sheet', default=DEFAULT_SHEET,
                        help="Workbook sheet name for --format append")
    parser.add_argument('--muscle-seeds', type=int, default=2,
                        help="Muscle seeds recorded per thigh")
    parser.add_argument('--parallel', action='store_true')
    parser.add_argument('--workers', type=int, default=4)
    parser.add_argument('--save-visualizations', action='store_true')
    parser.add_argument('--output-dir', default=None)
    parser.add_argument('--no-progress', action='store_true')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command line entry point; returns 1 if any image failed."""
    args = build_parser().parse_args(argv)

    processor = BatchProcessor(
        config=SegmentationConfig(muscle_seeds=args.muscle_seeds),
        save_visualizations=args.save_visualizations,
        output_dir=args.output_dir,
        sheet_name=args.sheet,
    )
    entries = processor.load_manifest(args.manifest)
    results = processor.process_all(entries,
                                    parallel=args.parallel,
                                    max_workers=args.workers,
                                    show_progress=not args.no_progress)

    if args.format == 'append':
        processor.append_to_workbook(results, args.output)
    else:
        processor.export_results(results, args.output, format=args.format)

    return int((results['status'] == 'error').any())


if __name__ == "__main__":
    raise SystemExit(main())
