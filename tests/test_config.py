import logging
from pathlib import Path

import pytest

from marsh_tools.marsh_config import DEFAULT_CONFIG, load_config, merge_config, resolve_data_path
from marsh_tools.marsh_logger import LOGGER_NAME, log_print, setup_logger


PROJECT_ROOT = Path(__file__).resolve().parents[1]


def test_load_config_without_file_returns_defaults():
    config = load_config()
    assert config == DEFAULT_CONFIG
    config['rarefaction']['min_count'] = 1
    assert DEFAULT_CONFIG['rarefaction']['min_count'] == 5000


def test_repository_config_matches_defaults():
    config = load_config(PROJECT_ROOT / 'config' / 'analysis_parameters.yml')
    assert config == DEFAULT_CONFIG


def test_yaml_values_override_defaults(tmp_path):
    path = tmp_path / 'params.yml'
    path.write_text(
        'rarefaction:\n'
        '  min_count: 2000\n'
        'visualization:\n'
        '  palette:\n'
        '    Control: black\n'
    )
    config = load_config(path)
    assert config['rarefaction']['min_count'] == 2000
    assert config['rarefaction']['seed'] == DEFAULT_CONFIG['rarefaction']['seed']
    assert config['visualization']['palette']['Control'] == 'black'
    assert config['visualization']['palette']['Pulse'] == DEFAULT_CONFIG['visualization']['palette']['Pulse']


def test_taxon_groups_replace_defaults():
    merged = merge_config(DEFAULT_CONFIG, {'taxon_groups': {'iron_reducers': {'pattern': 'geobacter'}}})
    assert list(merged['taxon_groups']) == ['iron_reducers']


def test_load_config_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / 'missing.yml')

    path = tmp_path / 'list.yml'
    path.write_text('- one\n- two\n')
    with pytest.raises(ValueError, match='mapping'):
        load_config(path)


def test_resolve_data_path(tmp_path):
    config = load_config()
    assert resolve_data_path(config, 'otu_table', tmp_path) == tmp_path / 'data' / 'otu_table.txt'
    config['data']['otu_table'] = str(tmp_path / 'elsewhere.txt')
    assert resolve_data_path(config, 'otu_table', '/unused') == tmp_path / 'elsewhere.txt'


def test_setup_logger_replaces_handlers(tmp_path):
    log_file = tmp_path / 'run.log'
    setup_logger()
    logger = setup_logger(log_file=log_file, log_level=logging.DEBUG)
    assert len(logger.handlers) == 2

    log_print('rarefied to 90 reads', level='debug')
    for handler in logger.handlers:
        handler.flush()
    assert 'rarefied to 90 reads' in log_file.read_text()

    setup_logger()
    assert len(logging.getLogger(LOGGER_NAME).handlers) == 1


def test_log_print_rejects_unknown_level():
    with pytest.raises(ValueError):
        log_print('message', level='loud')
