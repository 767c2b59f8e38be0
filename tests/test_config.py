from pathlib import Path

import pytest
import yaml

from vislam.config import SLAMConfig, load_config, merge_configs, save_config
from vislam.errors import ConfigError

CONFIG_DIR = Path(__file__).resolve().parent.parent / 'configs'


class TestSLAMConfig:
    def test_defaults(self):
        config = SLAMConfig()
        assert config.min_keyframe_translation == 0.1
        assert config.min_feature_tracked == 50
        assert config.max_map_size == 10 * 1024 * 1024
        assert not config.use_imu
        assert not config.enable_persistence

    def test_unknown_option(self):
        with pytest.raises(ConfigError, match='max_featurs'):
            SLAMConfig.from_dict({'max_featurs': 10})

    @pytest.mark.parametrize('name', ['max_features', 'min_keyframe_translation', 'autosave_interval'])
    def test_non_positive_values(self, name):
        with pytest.raises(ConfigError):
            SLAMConfig.from_dict({name: 0})

    def test_similarity_threshold_range(self):
        with pytest.raises(ConfigError):
            SLAMConfig(loop_closure_threshold=1.5)

    def test_replace(self):
        config = SLAMConfig().replace(use_imu=True)
        assert config.use_imu
        with pytest.raises(ConfigError):
            SLAMConfig().replace(max_keyframes=-1)


class TestConfigFiles:
    def test_merge_configs(self):
        merged = merge_configs({'a': 1, 'nested': {'x': 1, 'y': 2}}, {'nested': {'y': 3}, 'b': 2})
        assert merged == {'a': 1, 'nested': {'x': 1, 'y': 3}, 'b': 2}

    def test_shipped_configs_load(self):
        assert load_config(CONFIG_DIR / 'default.yaml') == SLAMConfig()
        config = load_config(CONFIG_DIR / 'visual_inertial.yaml')
        assert config.use_imu
        assert config.enable_loop_closure
        assert config.loop_closure_min_interval == 30
        assert config.max_features == 500

    def test_inherit_from(self, tmp_path):
        (tmp_path / 'base.yaml').write_text(yaml.dump({'max_features': 300, 'use_imu': True}))
        (tmp_path / 'child.yaml').write_text(yaml.dump({'inherit_from': 'base.yaml', 'max_features': 200}))
        config = load_config(tmp_path / 'child.yaml')
        assert config.max_features == 200
        assert config.use_imu

    def test_inherit_from_self(self, tmp_path):
        (tmp_path / 'loop.yaml').write_text(yaml.dump({'inherit_from': 'loop.yaml'}))
        with pytest.raises(ConfigError, match='Circular'):
            load_config(tmp_path / 'loop.yaml')

    def test_inherit_from_cycle(self, tmp_path):
        (tmp_path / 'a.yaml').write_text(yaml.dump({'inherit_from': 'b.yaml', 'max_features': 100}))
        (tmp_path / 'b.yaml').write_text(yaml.dump({'inherit_from': 'a.yaml'}))
        with pytest.raises(ConfigError, match='Circular'):
            load_config(tmp_path / 'a.yaml')

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / 'absent.yaml')

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text('- 1\n- 2\n')
        with pytest.raises(ConfigError):
            load_config(path)

    def test_save_and_reload(self, tmp_path):
        config = SLAMConfig(max_keyframes=42, storage_dir='maps')
        save_config(config, tmp_path / 'out' / 'config.yaml')
        assert load_config(tmp_path / 'out' / 'config.yaml') == config
