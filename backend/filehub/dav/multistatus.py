"""WebDAV XML: PROPFIND request parsing, multistatus and error bodies (namespace DAV:)."""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from email.utils import format_datetime
from typing import Dict, List, Optional
from urllib.parse import quote

from filehub.db.session import as_utc
from filehub.errors import BadRequest
from filehub.files.models import DIRECTORY_CONTENT_TYPE, FileObject

DAV_NS = "DAV:"
ET.register_namespace("D", DAV_NS)

XML_CONTENT_TYPE = "application/xml; charset=utf-8"

ALLPROP = "allprop"
PROPNAME = "propname"
PROP = "prop"

# Order in which properties appear in responses
LIVE_PROPS = (
    "displayname",
    "resourcetype",
    "getcontenttype",
    "getcontentlength",
    "getlastmodified",
    "creationdate",
    "getetag",
)
# Not defined for collections
FILE_ONLY_PROPS = ("getcontentlength", "getetag")


def dav(name: str) -> str:
    """Clark-notation tag in the DAV: namespace."""
    return f"{{{DAV_NS}}}{name}"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


@dataclass
class PropfindRequest:
    kind: str = ALLPROP
    # Clark-notation tags, for kind == PROP
    props: List[str] = field(default_factory=list)


def parse_propfind(body: bytes) -> PropfindRequest:
    """
    Parse a PROPFIND body. An empty body means allprop. Elements are matched by local name,
    so bodies that omit the DAV: namespace are accepted too.
    """
    if not body or not body.strip():
        return PropfindRequest(kind=ALLPROP)
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise BadRequest(f"Failed to parse XML: {e}") from e
    if _local(root.tag) != "propfind":
        raise BadRequest("Expected a propfind element")
    for child in root:
        name = _local(child.tag)
        if name == ALLPROP:
            return PropfindRequest(kind=ALLPROP)
        if name == PROPNAME:
            return PropfindRequest(kind=PROPNAME)
        if name == PROP:
            props = []
            for prop in child:
                tag = prop.tag if prop.tag.startswith("{") else dav(prop.tag)
                props.append(tag)
            return PropfindRequest(kind=PROP, props=props)
    return PropfindRequest(kind=ALLPROP)


def format_etag(obj: FileObject) -> str:
    """<hex mod-time seconds>-<hex size>, e.g. 65920080-5."""
    return f"{int(as_utc(obj.mod_time).timestamp()):x}-{obj.size:x}"


def format_rfc1123(obj: FileObject) -> str:
    return format_datetime(as_utc(obj.mod_time), usegmt=True)


def format_rfc3339(obj: FileObject) -> str:
    return as_utc(obj.created_at).strftime("%Y-%m-%dT%H:%M:%SZ")


def href_for(repo_name: str, obj: FileObject) -> str:
    """Escaped href of obj under /dav/<repo>; collections end with "/"."""
    href = f"/dav/{repo_name}{obj.path}"
    if obj.is_dir and not href.endswith("/"):
        href += "/"
    return quote(href)


def live_properties(obj: FileObject) -> Dict[str, Optional[str]]:
    """Local name -> text value of each live property defined for obj (resourcetype is handled apart)."""
    values: Dict[str, Optional[str]] = {
        "displayname": "" if obj.path == "/" else obj.name,
        "resourcetype": None,
        "getcontenttype": DIRECTORY_CONTENT_TYPE if obj.is_dir else obj.content_type,
        "getlastmodified": format_rfc1123(obj),
        "creationdate": format_rfc3339(obj),
    }
    if not obj.is_dir:
        values["getcontentlength"] = str(obj.size)
        values["getetag"] = format_etag(obj)
    return {name: values[name] for name in LIVE_PROPS if name in values}


def _prop_element(parent: ET.Element, tag: str, obj: FileObject, value: Optional[str]) -> None:
    el = ET.SubElement(parent, tag)
    if tag == dav("resourcetype"):
        if obj.is_dir:
            ET.SubElement(el, dav("collection"))
        return
    if value is not None:
        el.text = value


def _propstat(parent: ET.Element, status: str) -> ET.Element:
    propstat = ET.SubElement(parent, dav("propstat"))
    prop = ET.SubElement(propstat, dav("prop"))
    ET.SubElement(propstat, dav("status")).text = status
    return prop


def add_response(multistatus: ET.Element, href: str, obj: FileObject, req: PropfindRequest) -> None:
    """Append one <response> for obj, answering req."""
    response = ET.SubElement(multistatus, dav("response"))
    ET.SubElement(response, dav("href")).text = href
    live = live_properties(obj)
    if req.kind == PROPNAME:
        prop = _propstat(response, "HTTP/1.1 200 OK")
        for name in live:
            ET.SubElement(prop, dav(name))
        return
    if req.kind == ALLPROP:
        prop = _propstat(response, "HTTP/1.1 200 OK")
        for name, value in live.items():
            _prop_element(prop, dav(name), obj, value)
        return
    found = [t for t in req.props if t.startswith(f"{{{DAV_NS}}}") and _local(t) in live]
    missing = [t for t in req.props if t not in found]
    if found or not missing:
        prop = _propstat(response, "HTTP/1.1 200 OK")
        for tag in found:
            _prop_element(prop, tag, obj, live[_local(tag)])
    if missing:
        prop = _propstat(response, "HTTP/1.1 404 Not Found")
        for tag in missing:
            ET.SubElement(prop, tag)


def new_multistatus() -> ET.Element:
    return ET.Element(dav("multistatus"))


def to_bytes(root: ET.Element) -> bytes:
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def error_body(message: str) -> bytes:
    """<D:error><D:message>…</D:message></D:error>"""
    root = ET.Element(dav("error"))
    ET.SubElement(root, dav("message")).text = message
    return to_bytes(root)
