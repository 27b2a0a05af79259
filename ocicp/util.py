DEFAULT_REGISTRY = 'registry-1.docker.io'

# hostnames docker-cli treats as aliases for DEFAULT_REGISTRY
_DEFAULT_REGISTRY_ALIASES = ('docker.io', 'index.docker.io')


def _is_host(part: str) -> bool:
    # same heuristic as docker-cli: a dot, a port or `localhost` denote a registry host
    return part == 'localhost' or '.' in part or ':' in part


def normalise_image_reference(image_reference: str) -> str:
    '''
    returns the fully qualified form of the given image-reference, mimicking docker-cli:

    - `alpine:3` -> `registry-1.docker.io/library/alpine:3`
    - `example/foo` -> `registry-1.docker.io/example/foo`
    - `docker.io/library/alpine` -> `registry-1.docker.io/library/alpine`

    references w/ a registry-host (including `localhost` and `<host>:<port>`) are returned
    unchanged.
    '''
    if not isinstance(image_reference, str):
        raise ValueError(f'expected str, got {type(image_reference)}: {image_reference=}')
    if not image_reference:
        raise ValueError('image-reference must not be empty')

    host, sep, path = image_reference.partition('/')

    if not sep:
        return f'{DEFAULT_REGISTRY}/library/{image_reference}'
    if not _is_host(host):
        return f'{DEFAULT_REGISTRY}/{image_reference}'
    if host in _DEFAULT_REGISTRY_ALIASES:
        return f'{DEFAULT_REGISTRY}/{path}'

    return image_reference


def urljoin(*parts: str) -> str:
    '''
    joins the given url-parts w/ exactly one slash between each of them. Leading slashes of the
    first and trailing slashes of the last part are kept.
    '''
    if len(parts) == 1:
        return parts[0]

    first, *middle, last = parts

    return '/'.join((
        first.rstrip('/'),
        *(part.strip('/') for part in middle),
        last.lstrip('/'),
    ))
