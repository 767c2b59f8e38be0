from setuptools import setup, find_packages

setup(
    name="vislam",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    install_requires=[
        "numpy",
        "opencv-python",
        "scipy",
        "scikit-learn",
        "matplotlib",
        "pyyaml",
    ],
    extras_require={
        "test": ["pytest"],
    },
    description="A monocular visual-inertial SLAM engine with map persistence and loop closure detection",
    python_requires=">=3.8",
)
