from setuptools import setup, find_packages

setup(
    name="usbhotplugd",
    version="1.0",
    packages=find_packages(exclude=["tests"]),
    python_requires=">=3.10",
    install_requires=[
        "pyudev",
        "libvirt-python",
        "lxml",
        "PyYAML",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "usbhotplugd=usbhotplugd.usbhotplugd:main",
        ],
    },
)
