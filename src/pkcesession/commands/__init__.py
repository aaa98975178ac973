"""Built-in CLI sub-commands for pkcesession.

* :mod:`~pkcesession.commands.session` -- ``login``, ``logout``,
  ``status``, ``sessions`` and ``token``, registered directly on the root
  app.
* :mod:`~pkcesession.commands.discover` -- fetch an issuer's
  authorization server metadata.
* :mod:`~pkcesession.commands.config` -- view and create provider
  configuration.
"""
