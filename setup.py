"""
Packaging for guiderlink. Tests are run from the package root with `python -m pytest src`
or `python -m unittest discover -s src -p '*_test.py'`.
"""

from setuptools import setup


setup(
    name='guiderlink',
    version='0.0.1',
    description='Connection management and profile editing for the PHD2 guider in Python.',
    url='',
    author='',
    author_email='',
    license='LGPL',
    package_dir={'': 'src'},
    packages=['guiderlink', 'guiderlink.conduit', 'guiderlink.config', 'guiderlink.connector',
              'guiderlink.guider', 'guiderlink.profile', 'guiderlink.protocol', 'guiderlink.support'],
    package_data={'guiderlink.config': ['*.cfg']},
    python_requires='>=3.7',
    install_requires=[
        'configobj>=5.0.6',
        'psutil>=5.6',
    ],
    extras_require={
        'test': [
            'pyhamcrest>=2.0.3',
            'timeout-decorator>=0.5.0',
            'pytest',
        ],
    },
    zip_safe=False,
)
