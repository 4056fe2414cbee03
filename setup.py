from setuptools import setup

import os


long_description = open(
    os.path.join(
        os.path.dirname(__file__),
        'readme.rst'
    )
).read()

setup(
  name = 'mc-model-preview',
  packages = ['mcpreview'],
  version = '0.1.0',
  license='MIT',
  description = 'Before/after previews of Minecraft Bedrock entity models for pull requests.',
  long_description=long_description,
  keywords = ['MINECRAFT', 'BEDROCK-EDITION', 'BLOCKBENCH', 'GITHUB-ACTIONS'],
  python_requires='>=3.9',
  install_requires=[
    'Send2Trash',
    'dpath',
    'requests',
    'click',
    'python-dotenv',
  ],
  extras_require={
    'test': ['pytest'],
  },
  entry_points={
    'console_scripts': [
      'mc-model-preview = mcpreview.cli:entry_point',
    ],
  },
  classifiers=[
    'Development Status :: 4 - Beta',
    'Intended Audience :: Developers',
    'Topic :: Software Development :: Build Tools',
    'License :: OSI Approved :: MIT License',
    'Programming Language :: Python :: 3',
  ],
)
