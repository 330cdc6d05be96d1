from setuptools import setup, find_packages

setup(
    name="keyframe-extractor",
    version="0.1.0",
    description="Extract one sharp screenshot per distinct item shown in a video",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "opencv-python>=4.8.0",
        "numpy>=1.24.0",
        "Pillow>=10.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "keyframe-extractor=keyframe_extractor.cli:main",
        ],
    },
)
