"""Tests for the manifest-driven batch processor."""

import numpy as np
import pandas as pd
import pytest
from skimage import io

from batch_processor import (
    AREA_COLUMNS,
    DEFAULT_SHEET,
    BatchProcessor,
    main,
    parse_point,
    parse_polygon,
    parse_seed,
    parse_seeds,
)
from tests.utils import half_polygons
from thigh_analyzer import SIDES


def _format_seed(seed):
    return f"{seed[0]},{seed[1]}"


def _format_polygon(polygon):
    return ';'.join(f"{x},{y}" for x, y in polygon)


@pytest.fixture
def manifest(tmp_path, phantom):
    """Manifest with one good phantom image and one missing file."""
    image_path = tmp_path / '004_phantom.png'
    io.imsave(str(image_path), phantom.image.astype(np.uint8),
              check_contrast=False)
    flexor, extensor = half_polygons()

    def row(subject_id, path):
        data = {'subject_id': subject_id, 'image_path': str(path),
                'visit': 'Y1'}
        for side in SIDES:
            seeds = phantom.seeds(side)
            data[f'{side}_fat'] = _format_seed(seeds.fat)
            data[f'{side}_bone'] = _format_seed(seeds.bone)
            data[f'{side}_muscle'] = ';'.join(_format_seed(s) for s in seeds.muscle)
            data[f'{side}_flexor'] = _format_polygon(flexor)
            data[f'{side}_extensor'] = _format_polygon(extensor)
        return data

    path = tmp_path / 'manifest.csv'
    pd.DataFrame([
        row('004_KF_Y1', image_path),
        row('005_KF_Y1', tmp_path / 'missing.dcm'),
    ]).to_csv(path, index=False)
    return path


class TestParsers:
    """Test manifest cell parsers."""

    def test_parse_point(self):
        assert parse_point(' 3.5, 4 ') == (3.5, 4.0)

    @pytest.mark.parametrize("text", ['3', '1,2,3', ',4', ''])
    def test_parse_point_malformed(self, text):
        with pytest.raises(ValueError):
            parse_point(text)

    def test_parse_seed_rounds(self):
        assert parse_seed('10.6,3.2') == (11, 3)

    def test_parse_seeds(self):
        assert parse_seeds('1,2;3,4;') == ((1, 2), (3, 4))

    def test_parse_polygon(self):
        assert parse_polygon('0,0;5,0;5,5') == [(0.0, 0.0), (5.0, 0.0), (5.0, 5.0)]


class TestBatchProcessor:
    """Test loading, processing and exporting a manifest."""

    def test_load_manifest(self, manifest, phantom):
        entries = BatchProcessor().load_manifest(str(manifest))
        assert len(entries) == 2
        entry = entries[0]
        assert entry.subject_id == '004_KF_Y1'
        assert entry.seeds['left'] == phantom.seeds('left')
        assert len(entry.polygons['right']['extensor']) == 4
        assert entry.additional_fields == {'visit': 'Y1'}

    def test_missing_columns(self, tmp_path):
        path = tmp_path / 'bad.csv'
        pd.DataFrame([{'subject_id': 'x', 'image_path': 'y'}]).to_csv(path, index=False)
        with pytest.raises(ValueError, match='Missing required columns'):
            BatchProcessor().load_manifest(str(path))

    def test_process_all(self, manifest, phantom):
        processor = BatchProcessor()
        df = processor.process_all(processor.load_manifest(str(manifest)),
                                   show_progress=False)
        assert list(df.columns[:4]) == ['Subj ID', 'Subj #', 'MRI Date',
                                        'Analysis Date']

        good = df[df['Subj ID'] == '004_KF_Y1'].iloc[0]
        assert good['status'] == 'success'
        assert good['Subj #'] == '004'
        assert good['Units'] == 'pixel^2'
        assert good['L SubFat CSA'] == float(phantom.regions['left']['fat'].sum())
        assert good['visit'] == 'Y1'

        bad = df[df['Subj ID'] == '005_KF_Y1'].iloc[0]
        assert bad['status'] == 'error'
        assert bad['error'].startswith('FileNotFoundError')
        assert pd.isna(bad['L Mus CSA total'])

    def test_parallel_matches_serial(self, manifest):
        processor = BatchProcessor()
        entries = processor.load_manifest(str(manifest))
        serial = processor.process_all(entries, show_progress=False)
        parallel = processor.process_all(entries, parallel=True, max_workers=2,
                                         show_progress=False)
        key = 'Subj ID'
        pd.testing.assert_frame_equal(
            serial.sort_values(key).reset_index(drop=True),
            parallel.sort_values(key).reset_index(drop=True)[serial.columns],
        )

    def test_save_visualizations(self, manifest, tmp_path):
        out_dir = tmp_path / 'viz'
        processor = BatchProcessor(save_visualizations=True, output_dir=str(out_dir))
        df = processor.process_all(processor.load_manifest(str(manifest)),
                                   show_progress=False)
        assert (out_dir / '004_KF_Y1_thigh_csa.png').exists()
        assert (out_dir / '004_KF_Y1_histogram.png').exists()
        assert df['visualization_path'].notna().sum() == 1

    def test_export_csv(self, manifest, tmp_path):
        processor = BatchProcessor()
        df = processor.process_all(processor.load_manifest(str(manifest)),
                                   show_progress=False)
        out = tmp_path / 'results.csv'
        processor.export_results(df, str(out))
        assert len(pd.read_csv(out)) == 2
        with pytest.raises(ValueError):
            processor.export_results(df, str(out), format='parquet')

    def test_append_to_workbook(self, manifest, tmp_path):
        processor = BatchProcessor()
        df = processor.process_all(processor.load_manifest(str(manifest)),
                                   show_progress=False)
        out = tmp_path / 'Muscle CSA_Y1' / 'mthresh.xlsx'
        processor.append_to_workbook(df, str(out))
        processor.append_to_workbook(df, str(out))

        sheet = pd.read_excel(out, sheet_name=DEFAULT_SHEET, header=None,
                              engine='openpyxl')
        header = sheet.iloc[0].tolist()
        assert header[0] == 'Subj ID'
        assert sheet.iloc[1][header.index('L Mus CSA Ext')] == '(pixel^2)'
        # Header, units row and one successful row per append
        assert len(sheet) == 4
        assert sheet.iloc[2][0] == sheet.iloc[3][0] == '004_KF_Y1'

    def test_summary(self, manifest):
        processor = BatchProcessor()
        df = processor.process_all(processor.load_manifest(str(manifest)),
                                   show_progress=False)
        summary = processor.generate_summary_report(df)
        assert summary['total_images'] == 2
        assert summary['successful'] == 1
        assert summary['errors'] == 1
        assert set(summary['statistics']) == set(AREA_COLUMNS)
        stats = summary['statistics']['R Non Con CSA']
        assert stats['mean'] == stats['max'] == 0.0


class TestMain:
    """Test the command line entry point."""

    def test_exit_code_reports_errors(self, manifest, tmp_path):
        out = tmp_path / 'out.csv'
        assert main([str(manifest), str(out), '--no-progress']) == 1
        assert out.exists()

    def test_append_format(self, manifest, tmp_path):
        out = tmp_path / 'mthresh.xlsx'
        main([str(manifest), str(out), '--format', 'append', '--sheet',
              'Cohort', '--no-progress'])
        sheet = pd.read_excel(out, sheet_name='Cohort', header=None,
                              engine='openpyxl')
        assert len(sheet) == 3
