"""
Read and patch OpenMS INI (XML) parameter documents.

A TOPP tool writes its defaults with `-write_ini`; the document looks like

    <PARAMETERS>
      <NODE name="FeatureLinkerUnlabeledQT">
        <NODE name="1">
          <ITEMLIST name="in" .../>
          <ITEM name="out" value="" .../>
          <NODE name="algorithm">
            <NODE name="distance_RT">
              <ITEM name="max_difference" value="100.0" .../>

Parameters are addressed by their section chain below the instance node,
e.g. "out" or "algorithm:distance_RT:max_difference". Every mutation is
written back to disk before returning. Nothing here creates parameter
nodes: writing to a name the tool did not declare is an error.
"""
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from lxml import etree

from .errors import FileIOFailure, UnknownParameterError

logger = logging.getLogger(__name__)

# PARAMETERS > NODE(tool) > NODE(instance) > ... the first two are not part of a path
_ROOT_SECTIONS = 2


def format_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ParamDocument:
    def __init__(self, path, tree):
        self.path = Path(path)
        self.tree = tree

    @classmethod
    def load(cls, path) -> "ParamDocument":
        parser = etree.XMLParser(remove_blank_text=True)
        try:
            tree = etree.parse(str(path), parser)
        except (OSError, etree.XMLSyntaxError) as e:
            raise FileIOFailure(path, f"Could not read parameter file ({e})") from e
        return cls(path, tree)

    def save(self) -> None:
        encoding = self.tree.docinfo.encoding or "UTF-8"
        try:
            self.tree.write(str(self.path), pretty_print=True, xml_declaration=True, encoding=encoding)
        except OSError as e:
            raise FileIOFailure(self.path, f"Could not write parameter file ({e})") from e

    # -------------------------- lookup --------------------------

    @staticmethod
    def _sections(element) -> List[str]:
        chain = []
        parent = element.getparent()
        while parent is not None and parent.tag == "NODE":
            chain.append(parent.get("name", ""))
            parent = parent.getparent()
        chain.reverse()
        return chain

    def path_of(self, element) -> str:
        sections = self._sections(element)[_ROOT_SECTIONS:]
        return ":".join(sections + [element.get("name", "")])

    def _find(self, tag: str, path: str) -> List:
        return [e for e in self.tree.iter(tag) if self.path_of(e) == path]

    def get(self, path: str) -> str:
        found = self._find("ITEM", path)
        if not found:
            raise UnknownParameterError(self.path, path)
        return found[0].get("value", "")

    def get_list(self, path: str) -> List[str]:
        found = self._find("ITEMLIST", path)
        if not found:
            raise UnknownParameterError(self.path, path)
        return [li.get("value", "") for li in found[0].iter("LISTITEM")]

    # ------------------------- mutation -------------------------

    @staticmethod
    def _fill_list(itemlist, values: Iterable, clear_first: bool) -> None:
        if clear_first:
            for child in list(itemlist):
                itemlist.remove(child)
            itemlist.text = None
        for v in values:
            etree.SubElement(itemlist, "LISTITEM", value=format_value(v))

    def set_scalar(self, name: str, value) -> int:
        """
        Overwrite every ITEM called `name`, whatever section it lives in.
        """
        hits = 0
        for item in self.tree.iter("ITEM"):
            if item.get("name") == name:
                item.set("value", format_value(value))
                hits += 1
        if not hits:
            raise UnknownParameterError(self.path, name)
        self.save()
        return hits

    def set_nested(self, section: str, name: str, value) -> int:
        """Overwrite ITEMs called `name` whose direct parent section is `section`."""
        hits = 0
        for item in self.tree.iter("ITEM"):
            parent = item.getparent()
            if item.get("name") == name and parent is not None and parent.get("name") == section:
                item.set("value", format_value(value))
                hits += 1
        if not hits:
            raise UnknownParameterError(self.path, f"{section}:{name}")
        self.save()
        return hits

    def set_list(self, name: str, values: Iterable, clear_first: bool = False) -> int:
        values = list(values)
        hits = 0
        for itemlist in self.tree.iter("ITEMLIST"):
            if itemlist.get("name") == name:
                self._fill_list(itemlist, values, clear_first)
                hits += 1
        if not hits:
            raise UnknownParameterError(self.path, name)
        self.save()
        return hits

    def set_thresholds(self, mz_tolerance_ppm: float, rt_tolerance_minutes: float) -> None:
        """
        Set the pair-finding distances of MapAligner / FeatureLinker tools.
        m/z is always in ppm, RT is converted from minutes to seconds.
        """
        hits = 0
        for item in self.tree.iter("ITEM"):
            parent = item.getparent()
            section = parent.get("name") if parent is not None else None
            name = item.get("name")
            if section == "distance_MZ" and name == "max_difference":
                item.set("value", format_value(mz_tolerance_ppm))
                hits += 1
            elif section == "distance_MZ" and name == "unit":
                item.set("value", "ppm")
            elif section == "distance_RT" and name == "max_difference":
                item.set("value", format_value(rt_tolerance_minutes * 60.0))
                hits += 1
        if not hits:
            raise UnknownParameterError(self.path, "distance_MZ/distance_RT:max_difference")
        self.save()

    def _set_path(self, path: str, value) -> None:
        found = self._find("ITEM", path)
        if not found:
            raise UnknownParameterError(self.path, path)
        for item in found:
            item.set("value", format_value(value))

    def _set_list_path(self, path: str, values: Iterable, clear_first: bool) -> None:
        found = self._find("ITEMLIST", path)
        if not found:
            raise UnknownParameterError(self.path, path)
        values = list(values)
        for itemlist in found:
            self._fill_list(itemlist, values, clear_first)

    def set_path(self, path: str, value) -> None:
        self._set_path(path, value)
        self.save()

    def set_list_path(self, path: str, values: Iterable, clear_first: bool = False) -> None:
        self._set_list_path(path, values, clear_first)
        self.save()

    def apply(self, params: Dict[str, object]) -> None:
        """
        Write a {path: value} mapping. List and tuple values replace the
        content of the ITEMLIST at that path.
        """
        for path, value in params.items():
            if isinstance(value, (list, tuple)):
                self._set_list_path(path, value, clear_first=True)
            else:
                self._set_path(path, value)
        self.save()


def materialize_defaults(runner, tool: str, ini_path, params: Optional[Dict[str, object]] = None) -> ParamDocument:
    """
    Ask `tool` for its default INI, load it and optionally apply `params`.
    """
    runner.write_ini(tool, ini_path)
    doc = ParamDocument.load(ini_path)
    if params:
        doc.apply(params)
    logger.debug("Prepared %s parameters in %s", tool, ini_path)
    return doc
