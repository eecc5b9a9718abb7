from setuptools import setup

version = '0.1'

with open("README.md", "r", encoding="utf-8") as f:
    long_descr = f.read()

setup(
    name='pykef',
    packages=['pykef'],
    version=version,
    license='Apache 2.0',
    description='Control KEF LS50 Wireless and LSX speakers',
    long_description=long_descr,
    long_description_content_type='text/markdown',
    author='johnno',
    author_email='johnno@example.com',
    url='https://github.com/johnno/pykef',
    download_url=f'https://github.com/johnno/pykef/archive/{version}.tar.gz',
    keywords=['KEF', 'LS50', 'LSX', 'Speaker'],
    python_requires='>=3.10',
    install_requires=[],
    extras_require={
        'test': [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Topic :: Home Automation',
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python :: 3.10'
    ],
)
