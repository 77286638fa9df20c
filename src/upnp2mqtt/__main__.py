"""Entry point for ``python -m upnp2mqtt`` and the ``upnp2mqtt`` script."""

from upnp2mqtt import Bridge, __version__


def main() -> None:
    Bridge(version=__version__).cli()


if __name__ == "__main__":
    main()
