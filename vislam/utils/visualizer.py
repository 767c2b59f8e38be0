import matplotlib.pyplot as plt
import numpy as np


class MapVisualizer:
    def __init__(self, figsize=(10, 7)):
        self.figsize = figsize

    def plot_map(self, slam_map, ax=None, show_covisibility=True, title="SLAM Map"):
        """
        Top-down (x-z) view of keyframe trajectory, map points and covisibility edges.

        :param slam_map: Map to draw.
        :param ax: Matplotlib axes to draw into; a new figure is created if None.
        :param show_covisibility: Draw covisibility edges between keyframe centers.
        :return: The matplotlib Figure.
        """
        if ax is None:
            fig, ax = plt.subplots(figsize=self.figsize)
        else:
            fig = ax.figure

        with slam_map.lock:
            keyframes = slam_map.get_all_keyframes()
            centers = {kf.id: kf.pose.position for kf in keyframes}
            points = np.array([mp.position for mp in slam_map.get_all_map_points()]).reshape(-1, 3)
            edges = {(min(a, b), max(a, b)) for a, neighbors in slam_map.covisibility_graph.items()
                     for b in neighbors}

        if len(points):
            ax.scatter(points[:, 0], points[:, 2], c='green', s=2, label='Map points')

        if show_covisibility:
            for a, b in edges:
                if a in centers and b in centers:
                    ax.plot([centers[a][0], centers[b][0]], [centers[a][2], centers[b][2]],
                            c='lightgray', linewidth=0.5)

        if centers:
            trajectory = np.array(list(centers.values()))
            ax.plot(trajectory[:, 0], trajectory[:, 2], c='red', label='Keyframe trajectory')
            ax.scatter(trajectory[:, 0], trajectory[:, 2], c='blue', s=20)

        ax.set_title(title)
        ax.set_xlabel("X")
        ax.set_ylabel("Z")
        ax.axis('equal')
        if centers or len(points):
            ax.legend()
        return fig

    def save_map_plot(self, slam_map, path, **kwargs):
        """Render the map plot to an image file."""
        fig = self.plot_map(slam_map, **kwargs)
        fig.savefig(path, dpi=100)
        plt.close(fig)
        return path
