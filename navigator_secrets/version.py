"""Navigator Secrets Meta information.
   Navigator Secrets shares encrypted environment files across a team,
   giving every device its own cryptographic identity.
"""
__title__ = 'navigator_secrets'
__description__ = (
   'Navigator Secrets shares encrypted environment files across a team, '
   'giving every device its own cryptographic identity.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-secrets'
