from setuptools import find_packages, setup


LONG_DESCRIPTION = """\
Multi-device k-means: yinyang-accelerated Lloyd iterations with random or k-means++
initialization, distributed over several SYCL devices with dpctl, and a
scikit-learn compatible estimator on top.
"""


setup(
    name="multidevice-kmeans",
    description="Distributed k-means over several accelerators based on dpctl",
    license="BSD 3-Clause License",
    version="0.1.0",
    long_description=LONG_DESCRIPTION,
    classifiers=[
        "Intended Audience :: Science/Research",
        "Intended Audience :: Developers",
        "License :: OSI Approved",
        "Programming Language :: Python",
        "Topic :: Software Development",
        "Topic :: Scientific/Engineering",
        "Development Status :: 4 - Beta",
        "Operating System :: Microsoft :: Windows",
        "Operating System :: POSIX",
        "Operating System :: Unix",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: Implementation :: CPython",
    ],
    python_requires=">=3.10",
    install_requires=["numpy>=2.1", "scikit-learn", "dpctl>=0.19,<0.22", "dpnp>=0.17,<0.20"],
    extras_require={"test": ["pytest"]},
    packages=find_packages(include=["multidevice_kmeans", "multidevice_kmeans.*"]),
)
