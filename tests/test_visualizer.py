import matplotlib

matplotlib.use('Agg')

import matplotlib.pyplot as plt  # noqa: E402

from vislam.core.map import Map  # noqa: E402
from vislam.utils.visualizer import MapVisualizer  # noqa: E402

from test_map import build_map  # noqa: E402


class TestMapVisualizer:
    def setup_method(self):
        self.visualizer = MapVisualizer(figsize=(4, 3))

    def teardown_method(self):
        plt.close('all')

    def test_plot_map(self):
        fig = self.visualizer.plot_map(build_map(num_keyframes=3), title='Test')
        ax = fig.axes[0]
        assert ax.get_title() == 'Test'
        assert ax.get_legend() is not None

    def test_empty_map(self):
        fig = self.visualizer.plot_map(Map())
        assert fig.axes[0].get_legend() is None

    def test_save_map_plot(self, tmp_path):
        path = tmp_path / 'map.png'
        self.visualizer.save_map_plot(build_map(num_keyframes=2), path)
        assert path.exists()
        assert path.stat().st_size > 0
