#!/usr/bin/env python

import setuptools

setuptools.setup(
    name="patchflow",
    version="0.3.0",
    author="Chen Yang",
    author_email="healthonrails@gmail.com",
    description="Dense optical flow from overlapping patch-level motion estimates.",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    package_data={"patchflow.configs": ["*.yaml"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    install_requires=['numpy>=1.18.2',
                      'opencv-python-headless>=4.1.2.30',
                      'PyYAML>=5.3',
                      'torch>=2.0',
                      'termcolor>=1.1.0',
                      'colorama>=0.4.4; sys_platform=="win32"',
                      ],
    extras_require={
        'test': ['pytest>=6.0'],
    },
    python_requires='>=3.10',

    entry_points={
        'console_scripts': [
            'patchflow-densify = patchflow.motion.densify_runner:main',
        ],
    },


)
