import io
import os
from setuptools import setup

def read(name):
    file_path = os.path.join(os.path.dirname(__file__), name)
    return io.open(file_path, encoding='utf8').read()

setup(
    name='image-rebase',
    version='1.0.0',
    description="Rebase container images onto new base images using only registry API calls",
    long_description=read('README.rst'),
    keywords='docker registry rebase',
    license='Apache-2.0',
    packages=['imgrebase'],
    package_data={"imgrebase": ["py.typed"]},
    entry_points={'console_scripts': ['imgrebase=imgrebase.main:main']},
    install_requires=['www-authenticate>=0.9.2',
                      'requests>=2.18.4',
                      'tqdm>=4.19.4'],
    extras_require={'test': ['pytest',
                             'responses>=0.23.0',
                             'PyYAML']},
    python_requires='>=3.7'
)
