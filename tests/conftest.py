"""
Shared fixtures for the KML track tests.
"""

from typing import List, Optional, Sequence

import pytest

DAY = '2020-03-19'


def when(hm: str, day: str = DAY) -> str:
    """<when> line for an HH:MM (or HH:MM:SS) time on the given day."""
    if hm.count(':') == 1:
        hm += ':00'
    return f'<when>{day}T{hm}.000Z</when>'


def make_kml(times: Sequence[str], coords: Optional[Sequence[str]] = None,
             name: str = 'Route from 2020-03-19 09:00', day: str = DAY) -> str:
    """A track file in the one-tag-per-line layout the tool expects."""
    if coords is None:
        coords = [f'{-89.79 + i * 0.001:.3f} {32.98 + i * 0.001:.3f} 10.0' for i in range(len(times))]
    lines: List[str] = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<kml xmlns="http://www.opengis.net/kml/2.2" xmlns:gx="http://www.google.com/kml/ext/2.2">',
        '<Document>',
        f'<name><![CDATA[{name}]]></name>',
        '<Placemark>',
        '<gx:Track>',
    ]
    lines += [f'  {when(t, day)}' for t in times]
    lines += [f'  <gx:coord>{c}</gx:coord>' for c in coords]
    lines += [
        '</gx:Track>',
        '</Placemark>',
        '</Document>',
        '</kml>',
    ]
    return '\n'.join(lines)


@pytest.fixture
def four_point_kml():
    """Points every five minutes from 09:00 to 09:15."""
    return make_kml(['09:00', '09:05', '09:10', '09:15'])


@pytest.fixture
def four_point_file(four_point_kml, tmp_path):
    path = tmp_path / 'Route from 2020-03-19 09-00.kml'
    path.write_text(four_point_kml, encoding='utf-8')
    return path


@pytest.fixture
def hour_long_file(tmp_path):
    """Points at 09:00, 09:30 and 10:00."""
    path = tmp_path / 'hour.kml'
    path.write_text(make_kml(['09:00', '09:30', '10:00']), encoding='utf-8')
    return path


@pytest.fixture
def tracks_dir(tmp_path):
    """Two consecutive route files, named so they sort in route order."""
    folder = tmp_path / 'mytracks'
    folder.mkdir()
    (folder / 'Route from 2020-03-20 10-00.kml').write_text(
        make_kml(['10:00', '10:05'], ['2.0 2.0 0', '3.0 3.0 0'], name='Route from 2020-03-20 10:00', day='2020-03-20'),
        encoding='utf-8',
    )
    (folder / 'Route from 2020-03-19 09-00.kml').write_text(
        make_kml(['09:00', '09:05'], ['0.0 0.0 0', '1.0 1.0 0']),
        encoding='utf-8',
    )
    return folder
