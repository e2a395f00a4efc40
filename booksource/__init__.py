"""Rule-driven book source scraper.

A *book source* is a small JSON configuration describing how to search a
site and how to turn its pages into books, chapters and chapter text.
This package interprets those configurations and serves them through a
FastAPI application.

The modules in this package are:

* ``models.py`` – Pydantic models for sources and their rule groups,
  and for the records produced from them (``Book``, ``Chapter``,
  ``Content``).

* ``nodes.py`` – The node types passed between rule steps and helpers
  to serialize them and resolve links.

* ``rules.py`` – The rule interpreter: CSS with aliases, index
  suffixes, XPath, JSONPath, regex replacement and embedded scripts.

* ``script.py`` – The sandboxed JavaScript bridge used by rules and
  URL templates, with its small set of native helpers.

* ``request.py`` – Expansion of URL templates (placeholders, keyword
  encoding, option block) into request descriptors.

* ``extractor.py`` – Page fetching with a charset ladder, book details,
  tables of contents and multi-page chapter bodies.

* ``search.py`` – Concurrent search across many sources with streamed
  results, and explore pages.

* ``normalizer.py`` – Cleaning chapter markup into indented plain text.

* ``config.py`` – Settings read from the environment.

* ``main.py`` – The FastAPI application.
"""
